"""Tests for invoice creation, cancellation and the public view."""

import re
from decimal import Decimal
from uuid import uuid4

import pytest

from settlement_engine.errors import InvalidStateError, NotFoundError, ValidationFailedError
from settlement_engine.services import InvoiceService

from .conftest import RecordingDispatcher, make_invoice


@pytest.fixture
def invoices(session, dispatcher, audit) -> InvoiceService:
    return InvoiceService(session, dispatcher=dispatcher, audit=audit)


class TestCreateInvoice:
    async def test_create_invoice(self, session, invoices, owner_caller):
        invoice = await invoices.create_invoice(
            owner_caller, " Buyer@Example.com ", Decimal("450.00"), "Logo design", currency="eur"
        )
        await session.commit()

        assert re.fullmatch(r"INV-[0-9A-F]{10}", invoice.invoice_number)
        assert invoice.client_email == "buyer@example.com"
        assert invoice.currency == "EUR"
        assert invoice.status == "pending"
        assert invoice.escrow_enabled is False
        assert invoice.escrow_status == "none"

    @pytest.mark.parametrize(
        "email,amount,currency",
        [
            ("buyer@example.com", Decimal("0"), "USD"),
            ("buyer@example.com", Decimal("-5"), "USD"),
            ("   ", Decimal("10"), "USD"),
            ("buyer@example.com", Decimal("10"), "DOLLARS"),
        ],
    )
    async def test_invalid_input(self, invoices, owner_caller, email, amount, currency):
        with pytest.raises(ValidationFailedError):
            await invoices.create_invoice(owner_caller, email, amount, currency=currency)


class TestReadInvoices:
    async def test_list_only_own_invoices(self, session, invoices, invoice, owner_caller, stranger):
        await make_invoice(session, stranger)

        listed = await invoices.list_invoices(owner_caller)

        assert [i.id for i in listed] == [invoice.id]
        assert await invoices.list_invoices(owner_caller, status="paid") == []

    async def test_other_users_invoice_not_found(self, invoices, invoice, stranger_caller):
        with pytest.raises(NotFoundError):
            await invoices.get_invoice(invoice.id, stranger_caller)

    async def test_get_by_number(self, invoices, invoice):
        assert (await invoices.get_by_number(invoice.invoice_number)).id == invoice.id

        with pytest.raises(NotFoundError):
            await invoices.get_by_number("INV-MISSING")


class TestCancelInvoice:
    async def test_cancel_pending(self, session, invoices, invoice, owner_caller):
        cancelled = await invoices.cancel_invoice(invoice.id, owner_caller)
        await session.commit()

        assert cancelled.status == "cancelled"

    async def test_cancelled_invoice_cannot_be_paid(self, session, invoices, orchestrator, invoice, owner_caller):
        await invoices.cancel_invoice(invoice.id, owner_caller)
        await session.commit()

        with pytest.raises(InvalidStateError) as exc_info:
            await orchestrator.settle(invoice.id)
        assert exc_info.value.current_status == "cancelled"

    async def test_paid_invoice_cannot_be_cancelled(self, invoices, orchestrator, invoice, owner_caller):
        await orchestrator.settle(invoice.id)

        with pytest.raises(InvalidStateError) as exc_info:
            await invoices.cancel_invoice(invoice.id, owner_caller)
        assert exc_info.value.current_status == "paid"


class TestPublicView:
    async def test_view_emits_event_and_audit(self, invoices, invoice, dispatcher, audit):
        viewed = await invoices.view_public(invoice.invoice_number, ip="203.0.113.9", user_agent="pytest")

        assert viewed.status == "pending"
        [payload] = dispatcher.of_type("invoice.viewed")
        assert payload["invoiceNumber"] == invoice.invoice_number
        assert payload["clientEmail"] == "client@example.com"

        [(event, is_valid)] = await audit.verify_trail(invoice.id)
        assert event.event_type == "invoice.viewed"
        assert event.metadata_json["ip"] == "203.0.113.9"
        assert event.metadata_json["userAgent"] == "pytest"
        assert is_valid is True

    async def test_view_survives_dispatcher_failure(self, session, audit, invoice):
        service = InvoiceService(session, dispatcher=RecordingDispatcher(fail=True), audit=audit)

        viewed = await service.view_public(invoice.invoice_number)

        assert viewed.id == invoice.id
        assert len(await audit.verify_trail(invoice.id)) == 1

    async def test_unknown_number(self, invoices):
        with pytest.raises(NotFoundError):
            await invoices.view_public(f"INV-{uuid4().hex[:10]}")
