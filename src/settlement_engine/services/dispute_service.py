"""Dispute lifecycle: open, converse, resolve.

A dispute can only be raised on a paid invoice and there is at most one
per invoice; the unique index on ``dispute.invoice_id`` settles races.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from settlement_engine.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationFailedError,
)
from settlement_engine.integrations import EmailSender, NotificationDispatcher
from settlement_engine.models import (
    Dispute,
    DisputeMessage,
    EscrowEvent,
    Invoice,
    Transaction,
    utcnow,
)
from settlement_engine.services.audit_service import AuditLogger
from settlement_engine.services.caller import Caller, emails_match, mask_email, normalize_email
from settlement_engine.services.notifications import (
    audit_after_commit,
    dispute_message_email,
    dispute_opened_email,
    dispute_resolved_email,
    run_best_effort,
    send_email,
)
from settlement_engine.services.state_machine import (
    ActorType,
    DisputeStateMachine,
    DisputeStatus,
    EscrowEventType,
    EscrowStateMachine,
    EscrowStatus,
    InvoiceStateMachine,
    InvoiceStatus,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)

REQUESTED_ACTIONS = ("refund", "partial_refund", "revision")
RESOLUTION_ACTIONS = ("refund_full", "refund_partial", "no_refund")
RESOLVED_BY = ("admin", "mutual_agreement")


@dataclass(frozen=True)
class DisputeMessageView:
    id: UUID
    sender_type: str
    sender_email: str
    message: str
    attachments: list[str]
    created_at: datetime


@dataclass(frozen=True)
class DisputeView:
    """A dispute as seen by one caller."""

    id: UUID
    invoice_id: UUID
    invoice_number: str
    invoice_amount: Decimal
    initiated_by: str
    initiator_email: str
    reason: str
    requested_action: str
    status: str
    resolution: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime
    messages: list[DisputeMessageView] = field(default_factory=list)


@dataclass(frozen=True)
class _Parties:
    is_admin: bool
    is_freelancer: bool
    is_client: bool

    def sender_type(self) -> str | None:
        # Admin takes precedence, then the invoice owner, then the client
        if self.is_admin:
            return ActorType.ADMIN.value
        if self.is_freelancer:
            return ActorType.FREELANCER.value
        if self.is_client:
            return ActorType.CLIENT.value
        return None


class DisputeService:
    """Dispute state machine operations.

    Mutations commit their own transaction; notifications and audit run
    afterwards and never affect the outcome.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        email_sender: EmailSender | None = None,
        dispatcher: NotificationDispatcher | None = None,
        audit: AuditLogger | None = None,
    ):
        self.session = session
        self.email_sender = email_sender
        self.dispatcher = dispatcher
        self.audit = audit or AuditLogger(session)

    async def create_dispute(
        self,
        invoice_id: UUID,
        caller: Caller,
        initiator_email: str,
        reason: str,
        requested_action: str,
        evidence: list[str] | None = None,
    ) -> Dispute:
        """Open a dispute on a paid invoice and flip the invoice to disputed."""
        reason = (reason or "").strip()
        if len(reason) < 5:
            raise ValidationFailedError("Reason must be at least 5 characters")
        if requested_action not in REQUESTED_ACTIONS:
            raise ValidationFailedError(f"Unknown requested action: {requested_action}")
        if not caller.is_email(initiator_email):
            raise UnauthorizedError("initiatorEmail must match authenticated user email")

        invoice = await self._get_invoice(invoice_id)
        is_freelancer = invoice.user_id == caller.user_id
        is_client = emails_match(initiator_email, invoice.client_email)
        if not (is_freelancer or is_client):
            raise UnauthorizedError("Not authorized to dispute this invoice")
        initiated_by = ActorType.CLIENT.value if is_client else ActorType.FREELANCER.value

        if await self._has_dispute(invoice_id):
            raise ConflictError("A dispute already exists for this invoice")
        if invoice.status != InvoiceStatus.PAID.value:
            raise InvalidStateError("invoice", invoice.status, "only paid invoices can be disputed")

        InvoiceStateMachine.validate_transition(invoice.status, InvoiceStatus.DISPUTED.value)
        dispute = Dispute(
            invoice_id=invoice_id,
            initiated_by=initiated_by,
            initiator_email=normalize_email(initiator_email),
            reason=reason,
            requested_action=requested_action,
            status=DisputeStatus.OPEN.value,
        )
        try:
            result = await self.session.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id, Invoice.status == InvoiceStatus.PAID.value)
                .values(status=InvoiceStatus.DISPUTED.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self.session.rollback()
                if await self._has_dispute(invoice_id):
                    raise ConflictError("A dispute already exists for this invoice")
                await self.session.refresh(invoice, ["status"])
                raise InvalidStateError("invoice", invoice.status, "only paid invoices can be disputed")

            self.session.add(dispute)
            await self.session.flush()
            self.session.add(
                DisputeMessage(
                    dispute_id=dispute.id,
                    sender_type=initiated_by,
                    sender_email=normalize_email(initiator_email),
                    message=reason,
                    attachments=list(evidence or []),
                )
            )
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError("A dispute already exists for this invoice") from e

        await self.session.refresh(invoice, ["status", "updated_at"])
        logger.info("Dispute %s opened on invoice %s by %s", dispute.id, invoice_id, initiated_by)

        other_party = invoice.user.email if initiated_by == ActorType.CLIENT.value else invoice.client_email
        subject, body = dispute_opened_email(invoice.invoice_number, initiated_by, reason)
        await send_email(self.email_sender, other_party, subject, body)

        if self.dispatcher is not None:
            await run_best_effort(
                "invoice.disputed notification",
                self.dispatcher.dispatch(
                    invoice.user_id,
                    "invoice.disputed",
                    {
                        "invoiceId": str(invoice.id),
                        "invoiceNumber": invoice.invoice_number,
                        "disputeId": str(dispute.id),
                        "initiatedBy": initiated_by,
                        "reason": reason,
                        "requestedAction": requested_action,
                    },
                ),
            )
        await audit_after_commit(
            self.session,
            self.audit,
            invoice_id,
            "invoice.disputed",
            actor_id=caller.user_id,
            metadata={
                "disputeId": str(dispute.id),
                "initiatedBy": initiated_by,
                "initiatorEmail": normalize_email(initiator_email),
                "requestedAction": requested_action,
            },
        )
        return dispute

    async def add_message(
        self,
        dispute_id: UUID,
        caller: Caller,
        sender_email: str,
        message: str,
        attachments: list[str] | None = None,
    ) -> DisputeMessage:
        """Append a message to an open dispute thread."""
        message = (message or "").strip()
        if not message:
            raise ValidationFailedError("Message must not be empty")
        if not caller.is_email(sender_email):
            raise UnauthorizedError("senderEmail must match authenticated user email")

        dispute = await self._get_dispute(dispute_id)
        if not DisputeStateMachine.accepts_messages(dispute.status):
            raise InvalidStateError("dispute", dispute.status, "Dispute is not accepting new messages")

        parties = self._parties(dispute.invoice, caller)
        sender_type = parties.sender_type()
        if sender_type is None:
            raise UnauthorizedError("Not authorized to respond to this dispute")

        created = DisputeMessage(
            dispute_id=dispute.id,
            sender_type=sender_type,
            sender_email=normalize_email(sender_email),
            message=message,
            attachments=list(attachments or []),
        )
        self.session.add(created)
        dispute.updated_at = utcnow()
        await self.session.commit()

        invoice = dispute.invoice
        if sender_type == ActorType.CLIENT.value:
            other_party = invoice.user.email
        elif sender_type == ActorType.FREELANCER.value:
            other_party = invoice.client_email
        else:
            other_party = None
        subject, body = dispute_message_email(invoice.invoice_number, sender_type, message)
        await send_email(self.email_sender, other_party, subject, body)
        return created

    async def get_dispute(self, dispute_id: UUID, caller: Caller) -> DisputeView:
        dispute = await self._get_dispute(dispute_id, with_messages=True)
        parties = self._parties(dispute.invoice, caller)
        is_initiator = caller.is_email(dispute.initiator_email)
        if not (parties.is_admin or parties.is_freelancer or parties.is_client or is_initiator):
            raise UnauthorizedError("Not authorized to view this dispute")
        return self._view(dispute, caller, include_messages=True)

    async def list_disputes(
        self,
        caller: Caller,
        status: str | None = None,
        invoice_id: UUID | None = None,
    ) -> list[DisputeView]:
        """Disputes visible to the caller, newest first.

        Non-admins see disputes on invoices they own or are the client of,
        and disputes they initiated.
        """
        query = (
            select(Dispute)
            .join(Invoice, Dispute.invoice_id == Invoice.id)
            .options(selectinload(Dispute.invoice))
            .order_by(Dispute.created_at.desc())
        )
        if status:
            query = query.where(Dispute.status == status)
        if invoice_id:
            query = query.where(Dispute.invoice_id == invoice_id)
        if not caller.is_admin:
            email = normalize_email(caller.email)
            query = query.where(
                or_(
                    Invoice.user_id == caller.user_id,
                    func.lower(Invoice.client_email) == email,
                    func.lower(Dispute.initiator_email) == email,
                )
            )

        result = await self.session.execute(query)
        return [self._view(d, caller) for d in result.scalars().all()]

    async def resolve_dispute(
        self,
        dispute_id: UUID,
        caller: Caller,
        resolution: str,
        action: str,
        resolved_by: str,
        refund_amount: Decimal | None = None,
    ) -> Dispute:
        """Close an open dispute with a refund decision.

        The invoice stays ``disputed``. A full or partial refund writes a
        completed refund transaction; ``no_refund`` releases escrow that is
        held in dispute.
        """
        resolution = (resolution or "").strip()
        if len(resolution) < 3:
            raise ValidationFailedError("Resolution must be at least 3 characters")
        if action not in RESOLUTION_ACTIONS:
            raise ValidationFailedError(f"Unknown resolution action: {action}")
        if resolved_by not in RESOLVED_BY:
            raise ValidationFailedError(f"Unknown resolver: {resolved_by}")

        dispute = await self._get_dispute(dispute_id)
        invoice = dispute.invoice
        if dispute.status != DisputeStatus.OPEN.value:
            raise InvalidStateError("dispute", dispute.status, "Dispute already resolved")

        parties = self._parties(invoice, caller)
        if resolved_by == "admin" and not parties.is_admin:
            raise UnauthorizedError("Admin privileges required")
        if resolved_by == "mutual_agreement" and not (parties.is_client or parties.is_freelancer):
            raise UnauthorizedError("Not authorized to resolve this dispute")

        if action == "refund_full":
            refund = invoice.amount
        elif action == "refund_partial":
            if refund_amount is None:
                raise ValidationFailedError("refundAmount is required for refund_partial")
            if not Decimal(0) < refund_amount < invoice.amount:
                raise ValidationFailedError("refundAmount must be > 0 and < invoice amount")
            refund = refund_amount
        else:
            refund = Decimal(0)

        if resolved_by == "admin":
            actor_type = ActorType.ADMIN.value
        else:
            actor_type = ActorType.CLIENT.value if parties.is_client else ActorType.FREELANCER.value

        now = utcnow()
        DisputeStateMachine.validate_transition(dispute.status, DisputeStatus.RESOLVED.value)
        result = await self.session.execute(
            update(Dispute)
            .where(Dispute.id == dispute_id, Dispute.status == DisputeStatus.OPEN.value)
            .values(
                status=DisputeStatus.RESOLVED.value,
                resolution=resolution,
                resolved_by=resolved_by,
                resolved_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.session.rollback()
            await self.session.refresh(dispute, ["status"])
            raise InvalidStateError("dispute", dispute.status, "Dispute already resolved")

        if refund > 0:
            self.session.add(
                Transaction(
                    user_id=invoice.user_id,
                    type=TransactionType.REFUND.value,
                    status=TransactionStatus.COMPLETED.value,
                    amount=refund,
                    currency=invoice.currency,
                    invoice_id=invoice.id,
                    completed_at=now,
                )
            )

        escrow_released = False
        if (
            action == "no_refund"
            and invoice.escrow_enabled
            and invoice.escrow_status == EscrowStatus.DISPUTED.value
        ):
            EscrowStateMachine.validate_transition(invoice.escrow_status, EscrowStatus.RELEASED.value)
            released = await self.session.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice.id,
                    Invoice.escrow_status == EscrowStatus.DISPUTED.value,
                )
                .values(escrow_status=EscrowStatus.RELEASED.value, escrow_released_at=now)
                .execution_options(synchronize_session=False)
            )
            if released.rowcount:
                escrow_released = True
                self.session.add(
                    EscrowEvent(
                        invoice_id=invoice.id,
                        event_type=EscrowEventType.RELEASED.value,
                        actor_type=actor_type,
                        actor_email=normalize_email(caller.email),
                        notes="Released by dispute resolution",
                        metadata_json={"disputeId": str(dispute.id)},
                    )
                )

        summary = f"Resolution: {resolution}\n\nAction: {action}"
        if action == "refund_partial":
            summary += f" ({refund} {invoice.currency})"
        self.session.add(
            DisputeMessage(
                dispute_id=dispute.id,
                sender_type=actor_type,
                sender_email=normalize_email(caller.email),
                message=summary,
                attachments=[],
            )
        )
        await self.session.commit()
        await self.session.refresh(dispute, ["status", "resolution", "resolved_by", "resolved_at", "updated_at"])
        if escrow_released:
            await self.session.refresh(invoice, ["escrow_status", "escrow_released_at"])
        logger.info("Dispute %s resolved (%s, by %s)", dispute.id, action, resolved_by)

        subject, body = dispute_resolved_email(invoice.invoice_number, action, resolution)
        for to in (invoice.client_email, invoice.user.email):
            await send_email(self.email_sender, to, subject, body)

        metadata: dict[str, Any] = {
            "disputeId": str(dispute.id),
            "action": action,
            "resolvedBy": resolved_by,
            "refundAmount": str(refund),
            "escrowReleased": escrow_released,
        }
        await audit_after_commit(
            self.session, self.audit, invoice.id, "dispute.resolved", actor_id=caller.user_id, metadata=metadata
        )
        return dispute

    async def _get_invoice(self, invoice_id: UUID) -> Invoice:
        result = await self.session.execute(
            select(Invoice).where(Invoice.id == invoice_id).options(selectinload(Invoice.user))
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def _has_dispute(self, invoice_id: UUID) -> bool:
        existing = await self.session.scalar(select(Dispute.id).where(Dispute.invoice_id == invoice_id))
        return existing is not None

    async def _get_dispute(self, dispute_id: UUID, with_messages: bool = False) -> Dispute:
        options = [selectinload(Dispute.invoice).selectinload(Invoice.user)]
        if with_messages:
            options.append(selectinload(Dispute.messages))
        result = await self.session.execute(
            select(Dispute).where(Dispute.id == dispute_id).options(*options)
        )
        dispute = result.scalar_one_or_none()
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        return dispute

    @staticmethod
    def _parties(invoice: Invoice, caller: Caller) -> _Parties:
        return _Parties(
            is_admin=caller.is_admin,
            is_freelancer=invoice.user_id == caller.user_id,
            is_client=caller.is_email(invoice.client_email),
        )

    @staticmethod
    def _view(dispute: Dispute, caller: Caller, include_messages: bool = False) -> DisputeView:
        def visible(email: str) -> str:
            if caller.is_admin or caller.is_email(email):
                return email
            return mask_email(email)

        messages = []
        if include_messages:
            messages = [
                DisputeMessageView(
                    id=m.id,
                    sender_type=m.sender_type,
                    sender_email=visible(m.sender_email),
                    message=m.message,
                    attachments=list(m.attachments or []),
                    created_at=m.created_at,
                )
                for m in dispute.messages
            ]

        return DisputeView(
            id=dispute.id,
            invoice_id=dispute.invoice_id,
            invoice_number=dispute.invoice.invoice_number,
            invoice_amount=dispute.invoice.amount,
            initiated_by=dispute.initiated_by,
            initiator_email=visible(dispute.initiator_email),
            reason=dispute.reason,
            requested_action=dispute.requested_action,
            status=dispute.status,
            resolution=dispute.resolution,
            resolved_by=dispute.resolved_by,
            resolved_at=dispute.resolved_at,
            created_at=dispute.created_at,
            messages=messages,
        )
