"""Settlement engine services."""

from settlement_engine.services.audit_service import AuditLogger
from settlement_engine.services.caller import Caller
from settlement_engine.services.dispute_service import DisputeService
from settlement_engine.services.escrow_service import EscrowService
from settlement_engine.services.invoice_service import InvoiceService
from settlement_engine.services.referral_service import ReferralService
from settlement_engine.services.savings_service import SavingsService, allocate
from settlement_engine.services.settlement_service import (
    FailurePolicy,
    SettlementOrchestrator,
    SettlementResult,
    SettlementStep,
)
from settlement_engine.services.state_machine import (
    DisputeStateMachine,
    EscrowStateMachine,
    InvoiceStateMachine,
)
from settlement_engine.services.webhook_service import WebhookService

__all__ = [
    "AuditLogger",
    "Caller",
    "DisputeService",
    "DisputeStateMachine",
    "EscrowService",
    "EscrowStateMachine",
    "FailurePolicy",
    "InvoiceService",
    "InvoiceStateMachine",
    "ReferralService",
    "SavingsService",
    "SettlementOrchestrator",
    "SettlementResult",
    "SettlementStep",
    "WebhookService",
    "allocate",
]
