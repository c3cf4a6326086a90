"""Protocols and result types for external collaborators.

The settlement core talks to the outside world only through these
protocols. Each adapter is thin; none of them is awaited inside an
atomic state transition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID


WEBHOOK_EVENT_TYPES = frozenset(
    {
        "invoice.viewed",
        "invoice.paid",
        "invoice.disputed",
        "withdrawal.completed",
        "withdrawal.failed",
    }
)


@dataclass(frozen=True)
class Identity:
    """Caller identity resolved from a bearer token."""

    subject: str
    email: str
    name: str | None = None


@dataclass(frozen=True)
class PayoutResult:
    """Result of initiating a payout or auto-conversion."""

    triggered: bool
    reference: str | None = None
    message: str = ""


@dataclass(frozen=True)
class DeliveryResult:
    """Result of delivering one webhook to one subscriber."""

    subscription_id: UUID
    success: bool
    status_code: int | None = None
    error: str | None = None
    attempts: int = 1
    response_time_ms: int | None = None


@dataclass
class DispatchReceipt:
    """Returned by ``NotificationDispatcher.dispatch``."""

    event_type: str
    subscriber_count: int
    deliveries: list[DeliveryResult] = field(default_factory=list)


class IdentityProvider(Protocol):
    """Resolves an opaque bearer token to a caller identity."""

    async def verify(self, token: str) -> Identity | None:
        """Return the identity, or None if the token is not valid."""
        ...


class PayoutRail(Protocol):
    """External payment/payout rail."""

    provider_name: str

    async def initiate_payout(
        self,
        user_id: UUID,
        amount: Decimal,
        email: str,
        name: str | None,
    ) -> PayoutResult:
        """Initiate a payout for a freshly settled amount.

        Fire-and-forget from the orchestrator's point of view: failures are
        logged by the caller and never roll back settlement.
        """
        ...


class NotificationDispatcher(Protocol):
    """Delivers lifecycle events to subscribers, at least once."""

    async def dispatch(
        self,
        user_id: UUID,
        event_type: str,
        payload: dict[str, Any],
    ) -> DispatchReceipt:
        """Schedule delivery of an event; must return promptly."""
        ...


class EmailSender(Protocol):
    """Outbound email, best-effort."""

    async def send(self, to: str, subject: str, html: str) -> None:
        ...
