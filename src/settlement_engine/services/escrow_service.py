"""Escrow holding and conditional release.

Funds are put on hold during settlement. Afterwards only the invoice's
client can release or dispute them, and only while they are held.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from settlement_engine.errors import (
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailedError,
)
from settlement_engine.integrations import EmailSender
from settlement_engine.models import EscrowEvent, Invoice, utcnow
from settlement_engine.services.audit_service import AuditLogger
from settlement_engine.services.caller import Caller, emails_match, normalize_email
from settlement_engine.services.notifications import (
    audit_after_commit,
    escrow_disputed_email,
    escrow_released_email,
    send_email,
)
from settlement_engine.services.state_machine import (
    ActorType,
    EscrowEventType,
    EscrowStateMachine,
    EscrowStatus,
    InvoiceStatus,
)

logger = logging.getLogger(__name__)

ESCROW_DISPUTE_ACTIONS = ("refund", "revision")

# Columns reloaded after a committed escrow change; relationships stay loaded
_ESCROW_FIELDS = [
    "escrow_enabled",
    "escrow_status",
    "escrow_release_conditions",
    "escrow_released_at",
    "escrow_disputed_at",
    "updated_at",
]


@dataclass(frozen=True)
class EscrowStatusView:
    invoice: Invoice
    events: list[EscrowEvent]


class EscrowService:
    """Escrow operations on a single invoice.

    Each mutating operation commits its own transaction, then sends email
    and writes the audit event best-effort.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        email_sender: EmailSender | None = None,
        audit: AuditLogger | None = None,
    ):
        self.session = session
        self.email_sender = email_sender
        self.audit = audit or AuditLogger(session)

    async def enable_escrow(
        self, invoice_id: UUID, caller: Caller, release_conditions: str | None = None
    ) -> Invoice:
        """Turn on escrow for a pending invoice. Owner only."""
        invoice = await self._get_invoice(invoice_id)
        if invoice.user_id != caller.user_id:
            raise UnauthorizedError("Only the invoice owner can enable escrow")
        if invoice.escrow_enabled:
            raise InvalidStateError("escrow", invoice.escrow_status, "escrow already enabled")
        if invoice.status != InvoiceStatus.PENDING.value:
            raise InvalidStateError(
                "invoice", invoice.status, "escrow can only be enabled before payment"
            )

        result = await self.session.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.status == InvoiceStatus.PENDING.value,
                Invoice.escrow_enabled.is_(False),
            )
            .values(escrow_enabled=True, escrow_release_conditions=release_conditions)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.session.rollback()
            await self.session.refresh(invoice)
            raise InvalidStateError("invoice", invoice.status, "changed concurrently")

        self.session.add(
            EscrowEvent(
                invoice_id=invoice_id,
                event_type=EscrowEventType.CREATED.value,
                actor_type=ActorType.FREELANCER.value,
                actor_email=caller.email,
                notes="Escrow enabled",
                metadata_json={"releaseConditions": release_conditions or ""},
            )
        )
        await self.session.commit()
        await self.session.refresh(invoice, _ESCROW_FIELDS)
        logger.info("Escrow enabled for invoice %s", invoice_id)
        return invoice

    async def release_escrow(
        self,
        invoice_id: UUID,
        caller: Caller,
        client_email: str,
        notes: str | None = None,
    ) -> Invoice:
        """Client approves the work: held funds are released."""
        invoice = await self._authorize_client_action(invoice_id, caller, client_email)
        now = utcnow()
        await self._transition(invoice, EscrowStatus.RELEASED, escrow_released_at=now)

        self.session.add(
            EscrowEvent(
                invoice_id=invoice_id,
                event_type=EscrowEventType.RELEASED.value,
                actor_type=ActorType.CLIENT.value,
                actor_email=normalize_email(client_email),
                notes=notes or "Client approved work and released escrow",
                metadata_json={},
            )
        )
        await self.session.commit()
        await self.session.refresh(invoice, _ESCROW_FIELDS)
        logger.info("Escrow released for invoice %s", invoice_id)

        subject, body = escrow_released_email(invoice.invoice_number, client_email, notes)
        await send_email(self.email_sender, invoice.user.email, subject, body)
        await audit_after_commit(
            self.session,
            self.audit,
            invoice_id,
            "escrow.released",
            metadata={"clientEmail": normalize_email(client_email), "releasedAt": now.isoformat()},
        )
        return invoice

    async def dispute_escrow(
        self,
        invoice_id: UUID,
        caller: Caller,
        client_email: str,
        reason: str,
        requested_action: str,
    ) -> Invoice:
        """Client contests the work: held funds move to disputed."""
        reason = (reason or "").strip()
        if len(reason) < 5:
            raise ValidationFailedError("Reason must be at least 5 characters")
        if requested_action not in ESCROW_DISPUTE_ACTIONS:
            raise ValidationFailedError(f"Unknown requested action: {requested_action}")

        invoice = await self._authorize_client_action(invoice_id, caller, client_email)
        now = utcnow()
        await self._transition(invoice, EscrowStatus.DISPUTED, escrow_disputed_at=now)

        self.session.add(
            EscrowEvent(
                invoice_id=invoice_id,
                event_type=EscrowEventType.DISPUTED.value,
                actor_type=ActorType.CLIENT.value,
                actor_email=normalize_email(client_email),
                notes=reason,
                metadata_json={"requestedAction": requested_action},
            )
        )
        await self.session.commit()
        await self.session.refresh(invoice, _ESCROW_FIELDS)
        logger.info("Escrow disputed for invoice %s (%s)", invoice_id, requested_action)

        subject, body = escrow_disputed_email(
            invoice.invoice_number, client_email, reason, requested_action
        )
        await send_email(self.email_sender, invoice.user.email, subject, body)
        await audit_after_commit(
            self.session,
            self.audit,
            invoice_id,
            "escrow.disputed",
            metadata={
                "clientEmail": normalize_email(client_email),
                "requestedAction": requested_action,
                "disputedAt": now.isoformat(),
            },
        )
        return invoice

    async def get_status(self, invoice_id: UUID, caller: Caller) -> EscrowStatusView:
        """Escrow status and ordered history. Owner or client only."""
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .options(selectinload(Invoice.escrow_events))
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        if invoice.user_id != caller.user_id and not caller.is_email(invoice.client_email):
            raise UnauthorizedError("Not authorized")
        return EscrowStatusView(invoice=invoice, events=list(invoice.escrow_events))

    async def _get_invoice(self, invoice_id: UUID) -> Invoice:
        result = await self.session.execute(
            select(Invoice).where(Invoice.id == invoice_id).options(selectinload(Invoice.user))
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def _authorize_client_action(
        self, invoice_id: UUID, caller: Caller, client_email: str
    ) -> Invoice:
        # Checked in this order so a spoofed email never reveals invoice existence
        if not caller.is_email(client_email):
            raise UnauthorizedError("clientEmail must match authenticated user email")

        invoice = await self._get_invoice(invoice_id)
        if not emails_match(invoice.client_email, client_email):
            raise UnauthorizedError("Not authorized (client email mismatch)")
        if not invoice.escrow_enabled:
            raise InvalidStateError(
                "escrow", invoice.escrow_status, "escrow is not enabled for this invoice"
            )
        if invoice.escrow_status not in EscrowStateMachine.CLIENT_ACTIONABLE:
            raise InvalidStateError("escrow", invoice.escrow_status)
        return invoice

    async def _transition(
        self, invoice: Invoice, to_status: EscrowStatus, **timestamps: datetime
    ) -> None:
        from_status = invoice.escrow_status
        EscrowStateMachine.validate_transition(from_status, to_status.value)

        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id, Invoice.escrow_status == from_status)
            .values(escrow_status=to_status.value, **timestamps)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Another request moved the escrow first
            await self.session.rollback()
            await self.session.refresh(invoice)
            raise InvalidStateError("escrow", invoice.escrow_status)
