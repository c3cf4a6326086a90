"""Invoice lifecycle outside settlement: create, read, view, cancel."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.errors import InvalidStateError, NotFoundError, ValidationFailedError
from settlement_engine.integrations import NotificationDispatcher
from settlement_engine.models import Invoice, utcnow
from settlement_engine.services.audit_service import AuditLogger
from settlement_engine.services.caller import Caller, normalize_email
from settlement_engine.services.notifications import audit_after_commit, run_best_effort
from settlement_engine.services.state_machine import InvoiceStateMachine, InvoiceStatus

logger = logging.getLogger(__name__)


def generate_invoice_number() -> str:
    """``INV-`` followed by 10 upper-case hex characters."""
    return f"INV-{secrets.token_hex(5).upper()}"


class InvoiceService:
    """Owner-facing invoice operations and the public view."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        dispatcher: NotificationDispatcher | None = None,
        audit: AuditLogger | None = None,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.audit = audit or AuditLogger(session)

    async def create_invoice(
        self,
        caller: Caller,
        client_email: str,
        amount: Decimal,
        description: str = "",
        client_name: str | None = None,
        currency: str = "USD",
        due_date: datetime | None = None,
    ) -> Invoice:
        """Create a pending invoice owned by the caller. Caller commits."""
        if amount <= 0:
            raise ValidationFailedError("Amount must be positive")
        if not normalize_email(client_email):
            raise ValidationFailedError("Client email is required")
        if len(currency) != 3:
            raise ValidationFailedError("Currency must be a 3-letter code")

        invoice = Invoice(
            invoice_number=generate_invoice_number(),
            user_id=caller.user_id,
            client_email=normalize_email(client_email),
            client_name=client_name,
            description=description,
            amount=amount,
            currency=currency.upper(),
            status=InvoiceStatus.PENDING.value,
            escrow_enabled=False,
            escrow_status="none",
            due_date=due_date,
        )
        self.session.add(invoice)
        await self.session.flush()
        logger.info("Created invoice %s for user %s", invoice.invoice_number, caller.user_id)
        return invoice

    async def list_invoices(self, caller: Caller, status: str | None = None) -> list[Invoice]:
        query = select(Invoice).where(Invoice.user_id == caller.user_id)
        if status:
            query = query.where(Invoice.status == status)
        result = await self.session.execute(query.order_by(Invoice.created_at.desc()))
        return list(result.scalars().all())

    async def get_invoice(self, invoice_id: UUID, caller: Caller) -> Invoice:
        """Owner-scoped lookup: other users' invoices are reported as missing."""
        invoice = await self.session.get(Invoice, invoice_id)
        if invoice is None or invoice.user_id != caller.user_id:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def get_by_number(self, invoice_number: str) -> Invoice:
        result = await self.session.execute(
            select(Invoice).where(Invoice.invoice_number == invoice_number)
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("Invoice", invoice_number)
        return invoice

    async def cancel_invoice(self, invoice_id: UUID, caller: Caller) -> Invoice:
        """Cancel a pending invoice. Caller commits."""
        invoice = await self.get_invoice(invoice_id, caller)
        InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.CANCELLED.value)

        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == InvoiceStatus.PENDING.value)
            .values(status=InvoiceStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Settled or cancelled by a concurrent request
            await self.session.refresh(invoice, ["status"])
            raise InvalidStateError("invoice", invoice.status, "only pending invoices can be cancelled")

        await self.session.refresh(invoice, ["status", "updated_at"])
        logger.info("Cancelled invoice %s", invoice.invoice_number)
        return invoice

    async def view_public(
        self,
        invoice_number: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Invoice:
        """Record that the client opened the public invoice page.

        Emits ``invoice.viewed`` and an audit event; settlement state is
        never touched.
        """
        invoice = await self.get_by_number(invoice_number)
        viewed_at = utcnow()

        if self.dispatcher is not None:
            await run_best_effort(
                "invoice.viewed notification",
                self.dispatcher.dispatch(
                    invoice.user_id,
                    "invoice.viewed",
                    {
                        "invoiceId": str(invoice.id),
                        "invoiceNumber": invoice.invoice_number,
                        "amount": str(invoice.amount),
                        "currency": invoice.currency,
                        "clientEmail": invoice.client_email,
                        "viewedAt": viewed_at.isoformat(),
                    },
                ),
            )

        metadata: dict[str, Any] = {"viewedAt": viewed_at.isoformat()}
        if ip:
            metadata["ip"] = ip
        if user_agent:
            metadata["userAgent"] = user_agent
        await audit_after_commit(self.session, self.audit, invoice.id, "invoice.viewed", metadata=metadata)
        return invoice
