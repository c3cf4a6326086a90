"""Settlement Orchestrator - exactly-once invoice payment with saga fan-out.

Settles an invoice in two phases:
1. Core transition (atomic): pending -> paid, incoming transaction, and
   escrow hold when escrow is enabled
2. Fan-out steps (best-effort, each in its own transaction):
   referral accrual, savings allocation, payout, notification, audit

A failed fan-out step is logged and recorded in the step log; it never
rolls back the core transition. ``redrive`` re-runs whatever did not
complete.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from settlement_engine.config import get_settings
from settlement_engine.errors import InvalidStateError, NotFoundError, UpstreamFailureError
from settlement_engine.integrations import NotificationDispatcher, PayoutRail
from settlement_engine.models import (
    EscrowEvent,
    Invoice,
    SettlementStepRecord,
    Transaction,
    User,
    utcnow,
)
from settlement_engine.services.audit_service import AuditLogger
from settlement_engine.services.referral_service import ReferralService
from settlement_engine.services.savings_service import SavingsService
from settlement_engine.services.state_machine import (
    ActorType,
    EscrowEventType,
    EscrowStatus,
    InvoiceStateMachine,
    InvoiceStatus,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    """What a step failure does to the rest of the settlement."""

    ABORT = "abort"
    CONTINUE = "continue"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SettledInvoice:
    """Invoice and owner data captured right after the core transition.

    Steps read from this snapshot so a rolled-back step never forces a
    reload of expired ORM state.
    """

    invoice_id: UUID
    invoice_number: str
    user_id: UUID
    owner_email: str
    owner_name: str | None
    referrer_id: UUID | None
    amount: Decimal
    currency: str
    client_email: str
    client_name: str | None
    paid_at: datetime
    transaction_id: UUID | None
    escrow_held: bool


@dataclass(frozen=True)
class StepContext:
    session: AsyncSession
    invoice: SettledInvoice
    actor_id: UUID | None


@dataclass(frozen=True)
class SettlementStep:
    """One named fan-out step.

    ``run`` returns an optional human-readable detail for the outcome.
    """

    name: str
    policy: FailurePolicy
    run: Callable[[StepContext], Awaitable[str | None]]


@dataclass(frozen=True)
class StepOutcome:
    name: str
    status: StepStatus
    detail: str | None = None


@dataclass
class SettlementResult:
    """Returned once the core transition has committed."""

    invoice_id: UUID
    invoice_number: str
    paid_at: datetime
    transaction_id: UUID | None
    escrow_held: bool
    steps: list[StepOutcome] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[str]:
        return [s.name for s in self.steps if s.status is StepStatus.FAILED]

    def outcome(self, name: str) -> StepOutcome | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None


class SettlementOrchestrator:
    """Settles invoices exactly once and drives the dependent fan-out.

    Usage:
        orchestrator = SettlementOrchestrator(session, payout_rail=rail, dispatcher=webhooks)
        result = await orchestrator.settle(invoice_id)
        if result.failed_steps:
            ...  # reconciliation calls orchestrator.redrive(invoice_id) later
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        payout_rail: PayoutRail | None = None,
        dispatcher: NotificationDispatcher | None = None,
        audit: AuditLogger | None = None,
        step_timeout: float | None = None,
        steps: Sequence[SettlementStep] | None = None,
    ):
        self.session = session
        self.payout_rail = payout_rail
        self.dispatcher = dispatcher
        self.audit = audit or AuditLogger(session)
        self.step_timeout = (
            step_timeout if step_timeout is not None else get_settings().external_call_timeout_seconds
        )
        self.steps: list[SettlementStep] = list(steps) if steps is not None else self.default_steps()

    def default_steps(self) -> list[SettlementStep]:
        return [
            SettlementStep("referral", FailurePolicy.CONTINUE, self._accrue_referral),
            SettlementStep("savings", FailurePolicy.CONTINUE, self._allocate_savings),
            SettlementStep("payout", FailurePolicy.CONTINUE, self._initiate_payout),
            SettlementStep("notify", FailurePolicy.CONTINUE, self._notify_paid),
            SettlementStep("audit", FailurePolicy.CONTINUE, self._audit_paid),
        ]

    async def settle(self, invoice_id: UUID, actor_id: UUID | None = None) -> SettlementResult:
        """Mark a pending invoice paid and run the fan-out.

        Raises:
            NotFoundError: No such invoice
            InvalidStateError: Invoice is not pending (already settled,
                disputed or cancelled); nothing is written
        """
        transaction_id = await self._commit_core_transition(invoice_id)
        snapshot = await self._load_snapshot(invoice_id, transaction_id)
        logger.info(
            "Invoice %s settled (%s %s, escrow held: %s)",
            snapshot.invoice_number,
            snapshot.amount,
            snapshot.currency,
            snapshot.escrow_held,
        )

        outcomes = await self._run_steps(StepContext(self.session, snapshot, actor_id))
        return self._result(snapshot, outcomes)

    async def pay_by_number(self, invoice_number: str, actor_id: UUID | None = None) -> SettlementResult:
        """Settle the invoice behind a public payment link."""
        invoice_id = await self.session.scalar(
            select(Invoice.id).where(Invoice.invoice_number == invoice_number)
        )
        if invoice_id is None:
            raise NotFoundError("Invoice", invoice_number)
        return await self.settle(invoice_id, actor_id=actor_id)

    async def redrive(self, invoice_id: UUID) -> SettlementResult:
        """Re-run fan-out steps that are not logged as completed.

        Only valid for settled invoices (paid or disputed).
        """
        invoice = await self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        if invoice.status not in InvoiceStateMachine.SETTLED:
            raise InvalidStateError("invoice", invoice.status, "only settled invoices can be re-driven")

        transaction_id = await self.session.scalar(
            select(Transaction.id).where(
                Transaction.invoice_id == invoice_id,
                Transaction.type == TransactionType.INCOMING.value,
            )
        )
        completed = set(
            (
                await self.session.execute(
                    select(SettlementStepRecord.step).where(
                        SettlementStepRecord.invoice_id == invoice_id,
                        SettlementStepRecord.status == StepStatus.COMPLETED.value,
                    )
                )
            ).scalars()
        )
        snapshot = await self._load_snapshot(invoice_id, transaction_id)
        logger.info("Re-driving settlement of %s (completed: %s)", snapshot.invoice_number, sorted(completed))

        outcomes = await self._run_steps(
            StepContext(self.session, snapshot, None), skip=completed
        )
        return self._result(snapshot, outcomes)

    async def step_log(self, invoice_id: UUID) -> list[SettlementStepRecord]:
        result = await self.session.execute(
            select(SettlementStepRecord)
            .where(SettlementStepRecord.invoice_id == invoice_id)
            .order_by(SettlementStepRecord.created_at)
        )
        return list(result.scalars().all())

    async def _commit_core_transition(self, invoice_id: UUID) -> UUID:
        invoice = await self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)

        now = utcnow()
        # Escrow is decided from the row being updated, not the earlier read,
        # so an escrow enabled concurrently is still held.
        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == InvoiceStatus.PENDING.value)
            .values(
                status=InvoiceStatus.PAID.value,
                paid_at=now,
                escrow_status=case(
                    (Invoice.escrow_enabled.is_(True), EscrowStatus.HELD.value),
                    else_=Invoice.escrow_status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.session.rollback()
            await self.session.refresh(invoice, ["status"])
            raise InvalidStateError("invoice", invoice.status, "only pending invoices can be paid")

        await self.session.refresh(invoice, ["status", "paid_at", "escrow_enabled", "escrow_status"])
        transaction = Transaction(
            user_id=invoice.user_id,
            type=TransactionType.INCOMING.value,
            status=TransactionStatus.COMPLETED.value,
            amount=invoice.amount,
            currency=invoice.currency,
            invoice_id=invoice.id,
            completed_at=now,
        )
        self.session.add(transaction)
        if invoice.escrow_status == EscrowStatus.HELD.value:
            self.session.add(
                EscrowEvent(
                    invoice_id=invoice.id,
                    event_type=EscrowEventType.HELD.value,
                    actor_type=ActorType.SYSTEM.value,
                    actor_email="system",
                    notes="Payment received; funds held in escrow",
                    metadata_json={"amount": str(invoice.amount), "currency": invoice.currency},
                )
            )

        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return transaction.id

    async def _load_snapshot(self, invoice_id: UUID, transaction_id: UUID | None) -> SettledInvoice:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .options(selectinload(Invoice.user))
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one()
        owner: User = invoice.user
        return SettledInvoice(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            user_id=invoice.user_id,
            owner_email=owner.email,
            owner_name=owner.name,
            referrer_id=owner.referred_by_id,
            amount=invoice.amount,
            currency=invoice.currency,
            client_email=invoice.client_email,
            client_name=invoice.client_name,
            paid_at=invoice.paid_at,
            transaction_id=transaction_id,
            escrow_held=invoice.escrow_status == EscrowStatus.HELD.value,
        )

    async def _run_steps(self, ctx: StepContext, skip: set[str] | None = None) -> list[StepOutcome]:
        skip = skip or set()
        outcomes: list[StepOutcome] = []

        for step in self.steps:
            if step.name in skip:
                outcomes.append(StepOutcome(step.name, StepStatus.SKIPPED))
                continue

            try:
                detail = await step.run(ctx)
                await self._record_step(ctx.invoice.invoice_id, step.name, StepStatus.COMPLETED)
                await self.session.commit()
            except Exception as exc:
                await self.session.rollback()
                if step.policy is FailurePolicy.ABORT:
                    raise
                logger.exception(
                    "Settlement step %s failed for invoice %s",
                    step.name,
                    ctx.invoice.invoice_number,
                )
                await self._record_failure(ctx.invoice.invoice_id, step.name, exc)
                outcomes.append(StepOutcome(step.name, StepStatus.FAILED, str(exc) or type(exc).__name__))
                continue

            outcomes.append(StepOutcome(step.name, StepStatus.COMPLETED, detail))

        return outcomes

    async def _record_step(
        self, invoice_id: UUID, name: str, status: StepStatus, error: str | None = None
    ) -> None:
        record = await self.session.scalar(
            select(SettlementStepRecord).where(
                SettlementStepRecord.invoice_id == invoice_id,
                SettlementStepRecord.step == name,
            )
        )
        if record is None:
            record = SettlementStepRecord(invoice_id=invoice_id, step=name, attempts=0)
            self.session.add(record)
        record.status = status.value
        record.attempts = (record.attempts or 0) + 1
        record.last_error = error
        await self.session.flush()

    async def _record_failure(self, invoice_id: UUID, name: str, exc: Exception) -> None:
        try:
            await self._record_step(invoice_id, name, StepStatus.FAILED, str(exc)[:2000] or type(exc).__name__)
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            logger.exception("Could not record failure of step %s for invoice %s", name, invoice_id)

    async def _call_external(self, collaborator: str, awaitable: Awaitable):
        try:
            return await asyncio.wait_for(awaitable, self.step_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamFailureError(collaborator, f"timed out after {self.step_timeout}s") from e

    # Fan-out steps

    async def _accrue_referral(self, ctx: StepContext) -> str | None:
        invoice = ctx.invoice
        if invoice.referrer_id is None:
            return "no referrer"
        earning = await ReferralService(ctx.session).create_earning(
            referrer_id=invoice.referrer_id,
            referred_user_id=invoice.user_id,
            invoice_id=invoice.invoice_id,
            invoice_amount=invoice.amount,
        )
        return f"commission {earning.amount}"

    async def _allocate_savings(self, ctx: StepContext) -> str | None:
        allocation = await SavingsService(ctx.session).apply_allocation(
            ctx.invoice.user_id, ctx.invoice.amount
        )
        if not allocation.processed:
            return "no active goals"
        return f"saved {allocation.total_saved} across {len(allocation.goal_updates)} goal(s)"

    async def _initiate_payout(self, ctx: StepContext) -> str | None:
        if self.payout_rail is None:
            return "no payout rail"
        invoice = ctx.invoice
        payout = await self._call_external(
            self.payout_rail.provider_name,
            self.payout_rail.initiate_payout(
                invoice.user_id, invoice.amount, invoice.owner_email, invoice.owner_name
            ),
        )
        if not payout.triggered:
            return payout.message or "not triggered"
        return f"payout {payout.reference}"

    async def _notify_paid(self, ctx: StepContext) -> str | None:
        if self.dispatcher is None:
            return "no dispatcher"
        invoice = ctx.invoice
        receipt = await self._call_external(
            "notification dispatcher",
            self.dispatcher.dispatch(
                invoice.user_id,
                "invoice.paid",
                {
                    "invoiceId": str(invoice.invoice_id),
                    "invoiceNumber": invoice.invoice_number,
                    "amount": str(invoice.amount),
                    "currency": invoice.currency,
                    "clientEmail": invoice.client_email,
                    "clientName": invoice.client_name,
                    "paidAt": invoice.paid_at.isoformat(),
                },
            ),
        )
        return f"{receipt.subscriber_count} subscriber(s)"

    async def _audit_paid(self, ctx: StepContext) -> str | None:
        invoice = ctx.invoice
        await self.audit.log_event(
            invoice.invoice_id,
            "invoice.paid",
            actor_id=ctx.actor_id,
            metadata={
                "amount": str(invoice.amount),
                "currency": invoice.currency,
                "clientEmail": invoice.client_email,
                "transactionId": str(invoice.transaction_id) if invoice.transaction_id else None,
                "escrowHeld": invoice.escrow_held,
            },
        )
        return None

    @staticmethod
    def _result(snapshot: SettledInvoice, outcomes: list[StepOutcome]) -> SettlementResult:
        return SettlementResult(
            invoice_id=snapshot.invoice_id,
            invoice_number=snapshot.invoice_number,
            paid_at=snapshot.paid_at,
            transaction_id=snapshot.transaction_id,
            escrow_held=snapshot.escrow_held,
            steps=outcomes,
        )
