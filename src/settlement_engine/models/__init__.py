"""ORM models for the settlement ledger store."""

from settlement_engine.models.audit import AuditEvent, SettlementStepRecord
from settlement_engine.models.base import Base, TimestampMixin, utcnow
from settlement_engine.models.dispute import Dispute, DisputeMessage
from settlement_engine.models.invoice import EscrowEvent, Invoice, Transaction
from settlement_engine.models.referral import ReferralEarning
from settlement_engine.models.savings import SavingsGoal
from settlement_engine.models.user import User, WebhookSubscription

__all__ = [
    "AuditEvent",
    "Base",
    "Dispute",
    "DisputeMessage",
    "EscrowEvent",
    "Invoice",
    "ReferralEarning",
    "SavingsGoal",
    "SettlementStepRecord",
    "TimestampMixin",
    "Transaction",
    "User",
    "WebhookSubscription",
    "utcnow",
]
