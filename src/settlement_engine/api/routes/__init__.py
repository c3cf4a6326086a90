"""API routes."""

from settlement_engine.api.routes.audit import router as audit_router
from settlement_engine.api.routes.disputes import router as disputes_router
from settlement_engine.api.routes.escrow import router as escrow_router
from settlement_engine.api.routes.health import router as health_router
from settlement_engine.api.routes.invoices import router as invoices_router
from settlement_engine.api.routes.payments import router as payments_router
from settlement_engine.api.routes.referrals import router as referrals_router
from settlement_engine.api.routes.savings import router as savings_router
from settlement_engine.api.routes.webhooks import router as webhooks_router

__all__ = [
    "audit_router",
    "disputes_router",
    "escrow_router",
    "health_router",
    "invoices_router",
    "payments_router",
    "referrals_router",
    "savings_router",
    "webhooks_router",
]
