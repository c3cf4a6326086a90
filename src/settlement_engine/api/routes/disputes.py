"""Dispute API endpoints."""

from dataclasses import asdict
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, status

from settlement_engine.api.dependencies import CurrentCaller, Disputes
from settlement_engine.api.schemas import (
    DisputeCreate,
    DisputeListResponse,
    DisputeMessageCreate,
    DisputeMessageResponse,
    DisputeResolveRequest,
    DisputeResponse,
    ErrorResponse,
)

router = APIRouter(prefix="/disputes", tags=["disputes"])

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.post(
    "",
    response_model=DisputeResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
)
async def create_dispute(
    payload: DisputeCreate,
    caller: CurrentCaller,
    disputes: Disputes,
) -> DisputeResponse:
    """Open a dispute on a paid invoice."""
    dispute = await disputes.create_dispute(
        payload.invoice_id,
        caller,
        initiator_email=payload.initiator_email,
        reason=payload.reason,
        requested_action=payload.requested_action,
        evidence=[str(url) for url in payload.evidence],
    )
    view = await disputes.get_dispute(dispute.id, caller)
    return DisputeResponse.model_validate(asdict(view))


@router.get("", response_model=DisputeListResponse)
async def list_disputes(
    caller: CurrentCaller,
    disputes: Disputes,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    invoice_id: UUID | None = None,
) -> DisputeListResponse:
    """List disputes visible to the caller."""
    views = await disputes.list_disputes(caller, status=status_filter, invoice_id=invoice_id)
    return DisputeListResponse(items=[DisputeResponse.model_validate(asdict(v)) for v in views])


@router.get("/{dispute_id}", response_model=DisputeResponse, responses=_ERRORS)
async def get_dispute(
    dispute_id: UUID,
    caller: CurrentCaller,
    disputes: Disputes,
) -> DisputeResponse:
    view = await disputes.get_dispute(dispute_id, caller)
    return DisputeResponse.model_validate(asdict(view))


@router.post(
    "/{dispute_id}/messages",
    response_model=DisputeMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
)
async def add_dispute_message(
    dispute_id: UUID,
    payload: DisputeMessageCreate,
    caller: CurrentCaller,
    disputes: Disputes,
) -> DisputeMessageResponse:
    message = await disputes.add_message(
        dispute_id,
        caller,
        sender_email=payload.sender_email,
        message=payload.message,
        attachments=[str(url) for url in payload.attachments],
    )
    return DisputeMessageResponse.model_validate(message)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse, responses=_ERRORS)
async def resolve_dispute(
    dispute_id: UUID,
    payload: DisputeResolveRequest,
    caller: CurrentCaller,
    disputes: Disputes,
) -> DisputeResponse:
    """Resolve an open dispute (admin, or owner/client by mutual agreement)."""
    await disputes.resolve_dispute(
        dispute_id,
        caller,
        resolution=payload.resolution,
        action=payload.action,
        resolved_by=payload.resolved_by,
        refund_amount=payload.refund_amount,
    )
    view = await disputes.get_dispute(dispute_id, caller)
    return DisputeResponse.model_validate(asdict(view))
