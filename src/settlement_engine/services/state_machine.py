"""Status enums and transition tables for invoices, escrow and disputes."""

from __future__ import annotations

from enum import Enum

from settlement_engine.errors import InvalidStateError


class InvoiceStatus(str, Enum):
    """Invoice status values."""

    PENDING = "pending"
    PAID = "paid"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class EscrowStatus(str, Enum):
    """Escrow status values. ``none`` means escrow has not started holding."""

    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    DISPUTED = "disputed"


class DisputeStatus(str, Enum):
    """Dispute status values."""

    OPEN = "open"
    RESOLVED = "resolved"
    CLOSED = "closed"


class EscrowEventType(str, Enum):
    CREATED = "created"
    HELD = "held"
    RELEASED = "released"
    DISPUTED = "disputed"


class ActorType(str, Enum):
    CLIENT = "client"
    FREELANCER = "freelancer"
    ADMIN = "admin"
    SYSTEM = "system"


class TransactionType(str, Enum):
    INCOMING = "incoming"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"
    PAYMENT = "payment"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GoalStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    RELEASED = "released"


class _TransitionTable:
    """Shared transition checks over a ``VALID_TRANSITIONS`` table."""

    ENTITY = "entity"
    VALID_TRANSITIONS: dict[str, list[str]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Raise InvalidStateError naming the current status if not allowed."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateError(
                cls.ENTITY, from_status, f"cannot move to '{to_status}'"
            )

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)


class InvoiceStateMachine(_TransitionTable):
    """State machine for invoice status.

    Allowed transitions:
    - pending → paid (settlement)
    - pending → cancelled
    - paid → disputed
    """

    ENTITY = "invoice"
    VALID_TRANSITIONS: dict[str, list[str]] = {
        InvoiceStatus.PENDING.value: [InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value],
        InvoiceStatus.PAID.value: [InvoiceStatus.DISPUTED.value],
        InvoiceStatus.DISPUTED.value: [],  # Terminal
        InvoiceStatus.CANCELLED.value: [],  # Terminal
    }

    # Statuses in which settlement fan-out may be re-driven
    SETTLED = {InvoiceStatus.PAID.value, InvoiceStatus.DISPUTED.value}


class EscrowStateMachine(_TransitionTable):
    """State machine for escrow holding.

    Allowed transitions:
    - none → held (on payment, escrow enabled)
    - held → released (client approval)
    - held → disputed (client dispute)
    - disputed → released (dispute resolution only)
    """

    ENTITY = "escrow"
    VALID_TRANSITIONS: dict[str, list[str]] = {
        EscrowStatus.NONE.value: [EscrowStatus.HELD.value],
        EscrowStatus.HELD.value: [EscrowStatus.RELEASED.value, EscrowStatus.DISPUTED.value],
        EscrowStatus.DISPUTED.value: [EscrowStatus.RELEASED.value],
        EscrowStatus.RELEASED.value: [],  # Terminal
    }

    # Client-initiated actions act only on held funds
    CLIENT_ACTIONABLE = {EscrowStatus.HELD.value}


class DisputeStateMachine(_TransitionTable):
    """State machine for disputes.

    Allowed transitions:
    - open → resolved
    - open → closed
    """

    ENTITY = "dispute"
    VALID_TRANSITIONS: dict[str, list[str]] = {
        DisputeStatus.OPEN.value: [DisputeStatus.RESOLVED.value, DisputeStatus.CLOSED.value],
        DisputeStatus.RESOLVED.value: [],
        DisputeStatus.CLOSED.value: [],
    }

    @classmethod
    def accepts_messages(cls, status: str) -> bool:
        """Messages may be appended only while the dispute is open."""
        return status == DisputeStatus.OPEN.value
