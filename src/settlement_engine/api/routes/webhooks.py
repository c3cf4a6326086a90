"""Webhook subscription endpoints."""

from uuid import UUID

from fastapi import APIRouter, Response, status

from settlement_engine.api.dependencies import CurrentCaller, DbSession
from settlement_engine.api.schemas import (
    ErrorResponse,
    WebhookCreate,
    WebhookCreatedResponse,
    WebhookResponse,
)
from settlement_engine.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.get("", response_model=list[WebhookResponse])
async def list_webhooks(db: DbSession, caller: CurrentCaller) -> list[WebhookResponse]:
    subscriptions = await WebhookService(db).list_subscriptions(caller.user_id)
    return [WebhookResponse.model_validate(s) for s in subscriptions]


@router.post(
    "",
    response_model=WebhookCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_webhook(
    payload: WebhookCreate,
    db: DbSession,
    caller: CurrentCaller,
) -> WebhookCreatedResponse:
    """Subscribe an endpoint. The signing secret is only returned here."""
    subscription = await WebhookService(db).create_subscription(
        caller.user_id, str(payload.target_url), payload.events
    )
    await db.commit()
    return WebhookCreatedResponse.model_validate(subscription)


@router.delete(
    "/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_webhook(subscription_id: UUID, db: DbSession, caller: CurrentCaller) -> Response:
    await WebhookService(db).delete_subscription(caller.user_id, subscription_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
