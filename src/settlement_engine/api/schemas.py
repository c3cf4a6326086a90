"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    code: str


# ============================================================================
# Invoice schemas
# ============================================================================


class InvoiceCreate(BaseModel):
    """Schema for creating a new invoice."""

    client_email: EmailStr
    client_name: str | None = Field(default=None, max_length=200)
    description: str = Field(default="", max_length=5000)
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    due_date: datetime | None = None


class InvoiceResponse(BaseModel):
    """Schema for invoice response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str
    user_id: UUID
    client_email: str
    client_name: str | None = None
    description: str
    amount: Decimal
    currency: str
    status: str
    escrow_enabled: bool
    escrow_status: str
    due_date: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class InvoiceListResponse(BaseModel):
    items: list[InvoiceResponse]
    total: int


class PublicInvoiceResponse(BaseModel):
    """What a client sees on the public payment page."""

    invoice_number: str
    freelancer_name: str
    description: str
    amount: Decimal
    currency: str
    status: str
    due_date: datetime | None = None


# ============================================================================
# Settlement schemas
# ============================================================================


class StepOutcomeResponse(BaseModel):
    name: str
    status: str
    detail: str | None = None


class SettlementResponse(BaseModel):
    """Returned once payment is committed, whatever the fan-out outcome."""

    success: bool = True
    invoice_id: UUID
    invoice_number: str
    paid_at: datetime
    transaction_id: UUID | None = None
    escrow_held: bool
    steps: list[StepOutcomeResponse]


# ============================================================================
# Escrow schemas
# ============================================================================


class EscrowEnableRequest(BaseModel):
    invoice_id: UUID
    release_conditions: str | None = Field(default=None, max_length=5000)


class EscrowReleaseRequest(BaseModel):
    invoice_id: UUID
    client_email: EmailStr
    approval_notes: str | None = Field(default=None, max_length=5000)


class EscrowDisputeRequest(BaseModel):
    invoice_id: UUID
    client_email: EmailStr
    reason: str = Field(min_length=5, max_length=5000)
    requested_action: Literal["refund", "revision"]


class EscrowEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    actor_type: str
    actor_email: str
    notes: str | None = None
    created_at: datetime


class EscrowInvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    escrow_enabled: bool
    escrow_status: str
    escrow_release_conditions: str | None = None
    escrow_released_at: datetime | None = None
    escrow_disputed_at: datetime | None = None


class EscrowStatusResponse(BaseModel):
    invoice: EscrowInvoiceResponse
    events: list[EscrowEventResponse]


# ============================================================================
# Dispute schemas
# ============================================================================


class DisputeCreate(BaseModel):
    invoice_id: UUID
    initiator_email: EmailStr
    reason: str = Field(min_length=5, max_length=5000)
    requested_action: Literal["refund", "partial_refund", "revision"]
    evidence: list[HttpUrl] = Field(default_factory=list)


class DisputeMessageCreate(BaseModel):
    sender_email: EmailStr
    message: str = Field(min_length=1, max_length=5000)
    attachments: list[HttpUrl] = Field(default_factory=list)


class DisputeResolveRequest(BaseModel):
    resolution: str = Field(min_length=3, max_length=10000)
    action: Literal["refund_full", "refund_partial", "no_refund"]
    refund_amount: Decimal | None = Field(default=None, gt=0)
    resolved_by: Literal["admin", "mutual_agreement"]


class DisputeMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sender_type: str
    sender_email: str
    message: str
    attachments: list[str] = Field(default_factory=list)
    created_at: datetime


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    invoice_number: str
    invoice_amount: Decimal
    initiated_by: str
    initiator_email: str
    reason: str
    requested_action: str
    status: str
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime
    messages: list[DisputeMessageResponse] = Field(default_factory=list)


class DisputeListResponse(BaseModel):
    items: list[DisputeResponse]


# ============================================================================
# Savings schemas
# ============================================================================


class SavingsGoalCreate(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    target_amount: Decimal = Field(gt=0)
    savings_percentage: int = Field(ge=1, le=50)


class SavingsGoalUpdate(BaseModel):
    is_active: bool


class SavingsGoalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    target_amount: Decimal
    current_amount: Decimal
    savings_percentage: int
    is_active: bool
    status: str
    progress: Decimal = Decimal("0")
    created_at: datetime


class SavingsSummary(BaseModel):
    total_goals: int
    active_goals: int
    total_active_percentage: int
    remaining_percentage: int


class SavingsGoalListResponse(BaseModel):
    goals: list[SavingsGoalResponse]
    summary: SavingsSummary


class SavingsReleaseResponse(BaseModel):
    goal: SavingsGoalResponse
    released_amount: Decimal


# ============================================================================
# Referral schemas
# ============================================================================


class ReferralApplyRequest(BaseModel):
    code: str = Field(min_length=4, max_length=32)


class ReferralHistoryItem(BaseModel):
    date: date
    user: str
    earned: Decimal


class ReferralStatsResponse(BaseModel):
    referral_code: str
    total_referred: int
    total_earned: Decimal
    pending_payout: Decimal
    recent_history: list[ReferralHistoryItem]


# ============================================================================
# Audit schemas
# ============================================================================


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    event_type: str
    actor_id: UUID | None = None
    metadata: dict[str, Any] | None = None
    signature: str
    is_valid: bool
    created_at: datetime


class AuditEventListResponse(BaseModel):
    invoice_id: UUID
    events: list[AuditEventResponse]


# ============================================================================
# Webhook subscription schemas
# ============================================================================


class WebhookCreate(BaseModel):
    target_url: HttpUrl
    events: list[str] = Field(min_length=1)


class WebhookResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    target_url: str
    subscribed_events: list[str]
    is_active: bool
    last_triggered_at: datetime | None = None
    created_at: datetime


class WebhookCreatedResponse(WebhookResponse):
    """Includes the signing secret, shown only once."""

    signing_secret: str
