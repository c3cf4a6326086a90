"""Public payment link endpoints.

These are addressed by invoice number and require no authentication.
"""

from fastapi import APIRouter, Request

from settlement_engine.api.dependencies import DbSession, Invoices, Orchestrator
from settlement_engine.api.schemas import (
    ErrorResponse,
    PublicInvoiceResponse,
    SettlementResponse,
    StepOutcomeResponse,
)
from settlement_engine.models import User
from settlement_engine.services.settlement_service import SettlementResult

router = APIRouter(prefix="/pay", tags=["payments"])


def settlement_response(result: SettlementResult) -> SettlementResponse:
    return SettlementResponse(
        invoice_id=result.invoice_id,
        invoice_number=result.invoice_number,
        paid_at=result.paid_at,
        transaction_id=result.transaction_id,
        escrow_held=result.escrow_held,
        steps=[
            StepOutcomeResponse(name=s.name, status=s.status.value, detail=s.detail)
            for s in result.steps
        ],
    )


@router.get(
    "/{invoice_number}",
    response_model=PublicInvoiceResponse,
    responses={404: {"model": ErrorResponse}},
)
async def view_invoice(
    invoice_number: str,
    request: Request,
    db: DbSession,
    invoices: Invoices,
) -> PublicInvoiceResponse:
    """Public invoice page. Records a view; never changes settlement state."""
    invoice = await invoices.view_public(
        invoice_number,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    owner = await db.get(User, invoice.user_id)
    return PublicInvoiceResponse(
        invoice_number=invoice.invoice_number,
        freelancer_name=(owner.name if owner and owner.name else "Freelancer"),
        description=invoice.description,
        amount=invoice.amount,
        currency=invoice.currency,
        status=invoice.status,
        due_date=invoice.due_date,
    )


@router.post(
    "/{invoice_number}",
    response_model=SettlementResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def pay_invoice(invoice_number: str, orchestrator: Orchestrator) -> SettlementResponse:
    """Settle an invoice. Succeeds once payment is committed."""
    result = await orchestrator.pay_by_number(invoice_number)
    return settlement_response(result)
