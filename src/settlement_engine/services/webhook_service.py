"""Webhook subscription management."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.errors import ConflictError, NotFoundError, ValidationFailedError
from settlement_engine.integrations import WEBHOOK_EVENT_TYPES, generate_webhook_secret
from settlement_engine.models import WebhookSubscription

MAX_SUBSCRIPTIONS_PER_USER = 20


class WebhookService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_subscriptions(self, user_id: UUID) -> list[WebhookSubscription]:
        result = await self.session.execute(
            select(WebhookSubscription)
            .where(WebhookSubscription.user_id == user_id)
            .order_by(WebhookSubscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def create_subscription(
        self, user_id: UUID, target_url: str, events: list[str]
    ) -> WebhookSubscription:
        """Register an endpoint. The signing secret is generated here."""
        if not events:
            raise ValidationFailedError("At least one event must be subscribed")
        invalid = sorted(set(events) - WEBHOOK_EVENT_TYPES)
        if invalid:
            raise ValidationFailedError(f"Invalid event types: {', '.join(invalid)}")
        if not target_url.startswith(("http://", "https://")):
            raise ValidationFailedError("Invalid URL format")

        count = await self.session.scalar(
            select(func.count())
            .select_from(WebhookSubscription)
            .where(WebhookSubscription.user_id == user_id)
        )
        if count >= MAX_SUBSCRIPTIONS_PER_USER:
            raise ConflictError(f"Maximum of {MAX_SUBSCRIPTIONS_PER_USER} webhooks allowed")

        subscription = WebhookSubscription(
            user_id=user_id,
            target_url=target_url,
            signing_secret=generate_webhook_secret(),
            subscribed_events=sorted(set(events)),
            is_active=True,
        )
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def delete_subscription(self, user_id: UUID, subscription_id: UUID) -> None:
        subscription = await self.session.get(WebhookSubscription, subscription_id)
        if subscription is None or subscription.user_id != user_id:
            raise NotFoundError("Webhook", subscription_id)
        await self.session.delete(subscription)
        await self.session.flush()
