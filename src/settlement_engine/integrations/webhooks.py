"""Signed webhook delivery for lifecycle notifications.

The dispatcher:
- Looks up the user's active subscriptions for an event type
- Signs each payload with the subscriber's own secret (HMAC-SHA256)
- Delivers over HTTP with a bounded timeout and bounded retries
- Runs deliveries in the background so callers never wait on subscribers
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement_engine.integrations.base import DeliveryResult, DispatchReceipt
from settlement_engine.models import WebhookSubscription, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Settlement-Signature"
EVENT_HEADER = "X-Settlement-Event"
USER_AGENT = "SettlementEngine-Webhooks/1.0"


def compute_webhook_signature(payload: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for a webhook body."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: str, signature: str, secret: str) -> bool:
    """Constant-time check of a webhook signature."""
    expected = compute_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature)


def generate_webhook_secret() -> str:
    """Generate a signing secret for a new subscription."""
    return f"whsec_{secrets.token_urlsafe(32)}"


def build_webhook_body(event_type: str, payload: dict[str, Any]) -> str:
    """Serialize the envelope delivered to subscribers."""
    envelope = {
        "event": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": payload,
    }
    return json.dumps(envelope, default=str)


class WebhookDispatcher:
    """Notification dispatcher backed by ``WebhookSubscription`` rows.

    Usage:
        dispatcher = WebhookDispatcher(session_factory)
        await dispatcher.dispatch(user_id, "invoice.paid", {...})

        # On shutdown, wait for in-flight deliveries
        await dispatcher.drain()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        wait_for_delivery: bool = False,
    ):
        self._session_factory = session_factory
        self._client = client
        self._timeout = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._wait_for_delivery = wait_for_delivery
        self._tasks: set[asyncio.Task[DeliveryResult]] = set()

    async def dispatch(
        self,
        user_id: UUID,
        event_type: str,
        payload: dict[str, Any],
    ) -> DispatchReceipt:
        """Deliver an event to every matching subscriber of a user."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(
                    WebhookSubscription.user_id == user_id,
                    WebhookSubscription.is_active.is_(True),
                )
            )
            subscriptions = [
                s for s in result.scalars().all() if event_type in (s.subscribed_events or [])
            ]

        receipt = DispatchReceipt(event_type=event_type, subscriber_count=len(subscriptions))
        if not subscriptions:
            return receipt

        body = build_webhook_body(event_type, payload)
        deliveries = [
            self._deliver(s.id, s.target_url, s.signing_secret, body, event_type)
            for s in subscriptions
        ]

        if self._wait_for_delivery:
            receipt.deliveries = list(await asyncio.gather(*deliveries))
            return receipt

        for coro in deliveries:
            task = asyncio.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return receipt

    async def drain(self) -> None:
        """Wait for all in-flight deliveries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(
        self,
        subscription_id: UUID,
        target_url: str,
        signing_secret: str,
        body: str,
        event_type: str,
    ) -> DeliveryResult:
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: compute_webhook_signature(body, signing_secret),
            EVENT_HEADER: event_type,
            "User-Agent": USER_AGENT,
        }
        error: str | None = None
        status_code: int | None = None
        started = time.monotonic()

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._post(target_url, body, headers)
                status_code = response.status_code
                if response.is_success:
                    await self._mark_triggered(subscription_id)
                    return DeliveryResult(
                        subscription_id=subscription_id,
                        success=True,
                        status_code=status_code,
                        attempts=attempt,
                        response_time_ms=int((time.monotonic() - started) * 1000),
                    )
                error = f"HTTP {status_code}"
                logger.warning(
                    "Webhook %s returned non-OK status %s (attempt %d)",
                    subscription_id,
                    status_code,
                    attempt,
                )
            except httpx.HTTPError as exc:
                error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "Webhook %s delivery failed (attempt %d): %s",
                    subscription_id,
                    attempt,
                    error,
                )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff * 2 ** (attempt - 1))

        logger.error("Webhook %s gave up after %d attempts", subscription_id, self._max_attempts)
        return DeliveryResult(
            subscription_id=subscription_id,
            success=False,
            status_code=status_code,
            error=error,
            attempts=self._max_attempts,
            response_time_ms=int((time.monotonic() - started) * 1000),
        )

    async def _post(
        self, target_url: str, body: str, headers: dict[str, str]
    ) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                target_url, content=body, headers=headers, timeout=self._timeout
            )
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(target_url, content=body, headers=headers)

    async def _mark_triggered(self, subscription_id: UUID) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(WebhookSubscription)
                    .where(WebhookSubscription.id == subscription_id)
                    .values(last_triggered_at=utcnow())
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Could not update last_triggered_at for webhook %s", subscription_id)
