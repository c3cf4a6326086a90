"""Invoice API endpoints (owner-facing)."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, status

from settlement_engine.api.dependencies import CurrentCaller, DbSession, Invoices, Orchestrator
from settlement_engine.api.schemas import (
    ErrorResponse,
    InvoiceCreate,
    InvoiceListResponse,
    InvoiceResponse,
    SettlementResponse,
)
from settlement_engine.api.routes.payments import settlement_response

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post(
    "",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def create_invoice(
    db: DbSession,
    caller: CurrentCaller,
    invoices: Invoices,
    payload: InvoiceCreate,
) -> InvoiceResponse:
    """Create a new invoice in pending status."""
    invoice = await invoices.create_invoice(
        caller,
        client_email=payload.client_email,
        amount=payload.amount,
        description=payload.description,
        client_name=payload.client_name,
        currency=payload.currency,
        due_date=payload.due_date,
    )
    await db.commit()
    return InvoiceResponse.model_validate(invoice)


@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    caller: CurrentCaller,
    invoices: Invoices,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> InvoiceListResponse:
    """List the caller's invoices, newest first."""
    items = await invoices.list_invoices(caller, status=status_filter)
    return InvoiceListResponse(
        items=[InvoiceResponse.model_validate(i) for i in items],
        total=len(items),
    )


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_invoice(
    invoice_id: UUID,
    caller: CurrentCaller,
    invoices: Invoices,
) -> InvoiceResponse:
    invoice = await invoices.get_invoice(invoice_id, caller)
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/{invoice_id}/cancel",
    response_model=InvoiceResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def cancel_invoice(
    invoice_id: UUID,
    db: DbSession,
    caller: CurrentCaller,
    invoices: Invoices,
) -> InvoiceResponse:
    """Cancel a pending invoice."""
    invoice = await invoices.cancel_invoice(invoice_id, caller)
    await db.commit()
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/{invoice_id}/redrive",
    response_model=SettlementResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def redrive_settlement(
    invoice_id: UUID,
    caller: CurrentCaller,
    invoices: Invoices,
    orchestrator: Orchestrator,
) -> SettlementResponse:
    """Re-run settlement fan-out steps that did not complete."""
    if not caller.is_admin:
        # Ownership check; raises NotFound for other users' invoices
        await invoices.get_invoice(invoice_id, caller)
    result = await orchestrator.redrive(invoice_id)
    return settlement_response(result)
