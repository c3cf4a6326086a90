"""Stub collaborators for local development and testing.

Replace with real identity, payout and email adapters for production.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from uuid import UUID

from settlement_engine.integrations.base import Identity, PayoutResult

logger = logging.getLogger(__name__)


class StaticTokenIdentityProvider:
    """Identity provider backed by a fixed token table.

    Tokens take the form ``"<token>": Identity(...)``. Useful for local
    development where the real identity provider is unavailable.
    """

    def __init__(self, tokens: dict[str, Identity] | None = None):
        self._tokens = dict(tokens or {})

    def register(self, token: str, identity: Identity) -> None:
        self._tokens[token] = identity

    async def verify(self, token: str) -> Identity | None:
        return self._tokens.get(token)


class StubPayoutRail:
    """Stub payout rail.

    In production, this would:
    - Look up the user's auto-conversion rule and verified bank account
    - Convert the settled amount at the current rate
    - Submit the payout to the banking rail
    """

    provider_name = "payout_stub"

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.initiated: list[dict[str, object]] = []

    async def initiate_payout(
        self,
        user_id: UUID,
        amount: Decimal,
        email: str,
        name: str | None,
    ) -> PayoutResult:
        reference = f"PAYOUTSTUB-{uuid.uuid4().hex[:12].upper()}"
        self.initiated.append(
            {"user_id": user_id, "amount": amount, "email": email, "reference": reference}
        )
        if not self.accept:
            return PayoutResult(triggered=False, message="No active payout rule")
        logger.info("Stub payout %s for user %s amount %s", reference, user_id, amount)
        return PayoutResult(triggered=True, reference=reference)


class LoggingEmailSender:
    """Email sender that only logs."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, to: str, subject: str, html: str) -> None:
        self.sent.append((to, subject))
        logger.info("Email to %s: %s", to, subject)
