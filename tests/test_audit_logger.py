"""Tests for the signed audit trail."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from settlement_engine.errors import NotFoundError, UnauthorizedError
from settlement_engine.models import AuditEvent
from settlement_engine.services.audit_service import (
    AuditLogger,
    canonical_metadata,
    format_timestamp,
    mask_sensitive_data,
)

from .conftest import TEST_AUDIT_SECRET


class TestSigning:
    def test_signature_is_deterministic(self):
        logger = AuditLogger(session=None, secret=TEST_AUDIT_SECRET)
        ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        first = logger.sign("inv-1", "invoice.paid", ts, {"b": 1, "a": 2})
        second = logger.sign("inv-1", "invoice.paid", ts, {"a": 2, "b": 1})

        assert first == second
        assert len(first) == 64

    def test_signature_depends_on_secret(self):
        ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        a = AuditLogger(session=None, secret="one").sign("inv-1", "invoice.paid", ts, {})
        b = AuditLogger(session=None, secret="two").sign("inv-1", "invoice.paid", ts, {})

        assert a != b

    def test_naive_timestamp_treated_as_utc(self):
        aware = datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        naive = aware.replace(tzinfo=None)

        assert format_timestamp(naive) == format_timestamp(aware) == "2026-03-01T12:00:00.123456Z"

    def test_canonical_metadata_sorted_and_compact(self):
        assert canonical_metadata({"b": 1, "a": "x"}) == '{"a":"x","b":1}'
        assert canonical_metadata(None) == "{}"


class TestMasking:
    def test_masks_ip_and_emails(self):
        masked = mask_sensitive_data(
            {"ip": "192.168.10.20", "clientEmail": "jane@acme.com", "amount": "10.00"}
        )

        assert masked["ip"] == "192.168.***.***"
        assert masked["clientEmail"] == "j***@acme.com"
        assert masked["amount"] == "10.00"

    def test_original_not_mutated(self):
        metadata = {"ip": "10.0.0.1"}
        mask_sensitive_data(metadata)

        assert metadata["ip"] == "10.0.0.1"

    def test_none_passthrough(self):
        assert mask_sensitive_data(None) is None


class TestAuditTrail:
    async def test_logged_events_verify(self, session, audit, invoice):
        await audit.log_event(invoice.id, "invoice.viewed", metadata={"ip": "10.1.2.3"})
        await audit.log_event(invoice.id, "invoice.paid", metadata={"amount": "1000.00"})
        await session.commit()

        trail = await audit.verify_trail(invoice.id)

        assert [event.event_type for event, _ in trail] == ["invoice.viewed", "invoice.paid"]
        assert all(valid for _, valid in trail)

    async def test_tampered_metadata_detected(self, session, audit, invoice):
        event = await audit.log_event(invoice.id, "invoice.paid", metadata={"amount": "1000.00"})
        await session.commit()

        await session.execute(
            update(AuditEvent)
            .where(AuditEvent.id == event.id)
            .values(metadata_json={"amount": "1.00"})
        )
        await session.commit()
        session.expunge_all()

        [(stored, is_valid)] = await audit.verify_trail(invoice.id)
        assert stored.metadata_json == {"amount": "1.00"}
        assert is_valid is False

    async def test_wrong_secret_fails_verification(self, session, audit, invoice):
        await audit.log_event(invoice.id, "invoice.paid", metadata={})
        await session.commit()

        other = AuditLogger(session, secret="rotated-secret")
        [(_, is_valid)] = await other.verify_trail(invoice.id)

        assert is_valid is False

    async def test_owner_sees_raw_metadata(self, session, audit, invoice, owner_caller):
        await audit.log_event(invoice.id, "invoice.viewed", metadata={"ip": "10.1.2.3"})
        await session.commit()

        [view] = await audit.list_events(invoice.id, owner_caller)

        assert view.metadata == {"ip": "10.1.2.3"}
        assert view.is_valid is True

    async def test_client_sees_masked_metadata(self, session, audit, invoice, client_caller):
        await audit.log_event(
            invoice.id, "invoice.viewed", metadata={"ip": "10.1.2.3", "clientEmail": "client@example.com"}
        )
        await session.commit()

        [view] = await audit.list_events(invoice.id, client_caller)

        assert view.metadata == {"ip": "10.1.***.***", "clientEmail": "c***@example.com"}

    async def test_admin_sees_raw_metadata(self, session, audit, invoice, admin_caller):
        await audit.log_event(invoice.id, "invoice.viewed", metadata={"ip": "10.1.2.3"})
        await session.commit()

        [view] = await audit.list_events(invoice.id, admin_caller)

        assert view.metadata == {"ip": "10.1.2.3"}

    async def test_stranger_refused(self, session, audit, invoice, stranger_caller):
        with pytest.raises(UnauthorizedError):
            await audit.list_events(invoice.id, stranger_caller)

    async def test_unknown_invoice(self, session, audit, owner_caller):
        from uuid import uuid4

        with pytest.raises(NotFoundError):
            await audit.list_events(uuid4(), owner_caller)
