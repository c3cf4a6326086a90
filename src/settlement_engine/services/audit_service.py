"""Tamper-evident audit log for invoice lifecycle events.

Each event is stored in clear text next to an HMAC-SHA256 signature over
``invoice_id:event_type:timestamp:metadata``. Verification recomputes the
signature on read and flags mismatches without altering storage.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.config import get_settings
from settlement_engine.errors import NotFoundError, UnauthorizedError
from settlement_engine.models import AuditEvent, Invoice, utcnow
from settlement_engine.services.caller import Caller, mask_email

logger = logging.getLogger(__name__)

# Metadata keys holding email addresses, masked for non-owner readers
_EMAIL_KEYS = {"email", "clientEmail", "actorEmail", "senderEmail", "initiatorEmail"}


def format_timestamp(ts: datetime) -> str:
    """Canonical UTC timestamp used inside signatures.

    Naive values (as returned by SQLite) are treated as UTC.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def canonical_metadata(metadata: dict[str, Any] | None) -> str:
    """Key-sorted compact JSON, stable across JSON/JSONB round trips."""
    return json.dumps(metadata or {}, sort_keys=True, separators=(",", ":"), default=str)


def mask_sensitive_data(metadata: dict[str, Any] | None) -> dict[str, Any] | None:
    """Partially mask PII: last two IPv4 octets and email local parts."""
    if metadata is None:
        return None

    masked = dict(metadata)
    ip = masked.get("ip")
    if isinstance(ip, str):
        parts = ip.split(".")
        if len(parts) == 4:
            masked["ip"] = f"{parts[0]}.{parts[1]}.***.***"
    for key in _EMAIL_KEYS & masked.keys():
        if isinstance(masked[key], str):
            masked[key] = mask_email(masked[key])
    return masked


@dataclass(frozen=True)
class AuditEventView:
    """An audit event as returned to a reader."""

    id: UUID
    invoice_id: UUID
    event_type: str
    actor_id: UUID | None
    metadata: dict[str, Any] | None
    signature: str
    is_valid: bool
    created_at: datetime


class AuditLogger:
    """Appends and reads signed audit events.

    The signing secret is injected (defaults to ``AUDIT_SECRET``). All
    stored signatures are checked against the current secret.
    """

    def __init__(self, session: AsyncSession, secret: str | None = None):
        self.session = session
        self._secret = (secret or get_settings().audit_secret).encode()

    def sign(
        self,
        invoice_id: UUID | str,
        event_type: str,
        timestamp: datetime,
        metadata: dict[str, Any] | None,
    ) -> str:
        """Compute the HMAC-SHA256 signature of an event."""
        payload = ":".join(
            [
                str(invoice_id),
                event_type,
                format_timestamp(timestamp),
                canonical_metadata(metadata),
            ]
        )
        return hmac.new(self._secret, payload.encode(), hashlib.sha256).hexdigest()

    def verify(self, event: AuditEvent) -> bool:
        """True if the stored signature matches the stored content."""
        expected = self.sign(
            event.invoice_id, event.event_type, event.created_at, event.metadata_json
        )
        return hmac.compare_digest(expected, event.signature)

    async def log_event(
        self,
        invoice_id: UUID,
        event_type: str,
        actor_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Append a signed event. The caller owns the commit."""
        created_at = utcnow()
        metadata = dict(metadata or {})
        event = AuditEvent(
            invoice_id=invoice_id,
            event_type=event_type,
            actor_id=actor_id,
            metadata_json=metadata,
            signature=self.sign(invoice_id, event_type, created_at, metadata),
            created_at=created_at,
        )
        self.session.add(event)
        await self.session.flush()
        logger.debug("Audit %s for invoice %s", event_type, invoice_id)
        return event

    async def verify_trail(self, invoice_id: UUID) -> list[tuple[AuditEvent, bool]]:
        """All events of an invoice in order, each paired with its verification result."""
        result = await self.session.execute(
            select(AuditEvent)
            .where(AuditEvent.invoice_id == invoice_id)
            .order_by(AuditEvent.created_at, AuditEvent.id)
        )
        checked = []
        for event in result.scalars().all():
            is_valid = self.verify(event)
            if not is_valid:
                logger.warning("Audit event %s failed signature verification", event.id)
            checked.append((event, is_valid))
        return checked

    async def list_events(self, invoice_id: UUID, caller: Caller) -> list[AuditEventView]:
        """Read the audit trail of an invoice with per-event verification.

        The invoice owner and admins receive raw metadata; the invoice's
        client receives masked metadata; anyone else is refused.
        """
        invoice = await self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)

        is_owner = invoice.user_id == caller.user_id
        if not (is_owner or caller.is_admin or caller.is_email(invoice.client_email)):
            raise UnauthorizedError("Not authorized to read this audit trail")
        raw = is_owner or caller.is_admin

        views = []
        for event, is_valid in await self.verify_trail(invoice_id):
            views.append(
                AuditEventView(
                    id=event.id,
                    invoice_id=event.invoice_id,
                    event_type=event.event_type,
                    actor_id=event.actor_id,
                    metadata=event.metadata_json if raw else mask_sensitive_data(event.metadata_json),
                    signature=event.signature,
                    is_valid=is_valid,
                    created_at=event.created_at,
                )
            )
        return views
