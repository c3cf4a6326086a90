"""Audit trail endpoints."""

from uuid import UUID

from fastapi import APIRouter, Request

from settlement_engine.api.dependencies import CurrentCaller, DbSession
from settlement_engine.api.schemas import AuditEventListResponse, AuditEventResponse, ErrorResponse
from settlement_engine.services.audit_service import AuditLogger

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get(
    "/invoices/{invoice_id}",
    response_model=AuditEventListResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def list_audit_events(
    invoice_id: UUID,
    request: Request,
    db: DbSession,
    caller: CurrentCaller,
) -> AuditEventListResponse:
    """Signed audit trail of an invoice, each event verified on read."""
    audit = AuditLogger(db, secret=request.app.state.settings.audit_secret)
    events = await audit.list_events(invoice_id, caller)
    return AuditEventListResponse(
        invoice_id=invoice_id,
        events=[AuditEventResponse.model_validate(e) for e in events],
    )
