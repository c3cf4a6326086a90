"""Escrow API endpoints."""

from uuid import UUID

from fastapi import APIRouter

from settlement_engine.api.dependencies import CurrentCaller, Escrow
from settlement_engine.api.schemas import (
    ErrorResponse,
    EscrowDisputeRequest,
    EscrowEnableRequest,
    EscrowEventResponse,
    EscrowInvoiceResponse,
    EscrowReleaseRequest,
    EscrowStatusResponse,
)

router = APIRouter(prefix="/escrow", tags=["escrow"])

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


@router.post("/enable", response_model=EscrowInvoiceResponse, responses=_ERRORS)
async def enable_escrow(
    payload: EscrowEnableRequest,
    caller: CurrentCaller,
    escrow: Escrow,
) -> EscrowInvoiceResponse:
    """Enable escrow on a pending invoice (owner only)."""
    invoice = await escrow.enable_escrow(payload.invoice_id, caller, payload.release_conditions)
    return EscrowInvoiceResponse.model_validate(invoice)


@router.post("/release", response_model=EscrowInvoiceResponse, responses=_ERRORS)
async def release_escrow(
    payload: EscrowReleaseRequest,
    caller: CurrentCaller,
    escrow: Escrow,
) -> EscrowInvoiceResponse:
    """Client releases held funds to the freelancer."""
    invoice = await escrow.release_escrow(
        payload.invoice_id, caller, payload.client_email, payload.approval_notes
    )
    return EscrowInvoiceResponse.model_validate(invoice)


@router.post("/dispute", response_model=EscrowInvoiceResponse, responses=_ERRORS)
async def dispute_escrow(
    payload: EscrowDisputeRequest,
    caller: CurrentCaller,
    escrow: Escrow,
) -> EscrowInvoiceResponse:
    """Client disputes held funds."""
    invoice = await escrow.dispute_escrow(
        payload.invoice_id,
        caller,
        payload.client_email,
        payload.reason,
        payload.requested_action,
    )
    return EscrowInvoiceResponse.model_validate(invoice)


@router.get("/{invoice_id}", response_model=EscrowStatusResponse, responses=_ERRORS)
async def get_escrow_status(
    invoice_id: UUID,
    caller: CurrentCaller,
    escrow: Escrow,
) -> EscrowStatusResponse:
    """Escrow status and history, visible to the owner and the client."""
    view = await escrow.get_status(invoice_id, caller)
    return EscrowStatusResponse(
        invoice=EscrowInvoiceResponse.model_validate(view.invoice),
        events=[EscrowEventResponse.model_validate(e) for e in view.events],
    )
