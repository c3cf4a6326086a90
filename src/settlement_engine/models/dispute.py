"""Dispute and dispute message models."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engine.models.base import (
    Base,
    TimestampMixin,
    UpdatedAtMixin,
    UUIDPrimaryKeyMixin,
)

if TYPE_CHECKING:
    from settlement_engine.models.invoice import Invoice


class Dispute(Base, UUIDPrimaryKeyMixin, TimestampMixin, UpdatedAtMixin):
    """A disagreement over a paid invoice. At most one per invoice."""

    __tablename__ = "dispute"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    initiated_by: Mapped[str] = mapped_column(String, nullable=False)
    initiator_email: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    requested_action: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="open")
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "initiated_by IN ('client', 'freelancer')",
            name="dispute_initiated_by_ck",
        ),
        CheckConstraint(
            "requested_action IN ('refund', 'partial_refund', 'revision')",
            name="dispute_requested_action_ck",
        ),
        CheckConstraint(
            "status IN ('open', 'resolved', 'closed')",
            name="dispute_status_ck",
        ),
    )

    # Relationships
    invoice: Mapped[Invoice] = relationship()
    messages: Mapped[list[DisputeMessage]] = relationship(
        back_populates="dispute",
        order_by="DisputeMessage.created_at",
        cascade="all, delete-orphan",
    )


class DisputeMessage(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A message in a dispute thread."""

    __tablename__ = "dispute_message"

    dispute_id: Mapped[UUID] = mapped_column(
        ForeignKey("dispute.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_type: Mapped[str] = mapped_column(String, nullable=False)
    sender_email: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list[str]] = mapped_column(nullable=False, default=list)

    __table_args__ = (
        CheckConstraint(
            "sender_type IN ('client', 'freelancer', 'admin')",
            name="dispute_message_sender_ck",
        ),
        Index("dispute_message_dispute", "dispute_id", "created_at"),
    )

    # Relationships
    dispute: Mapped[Dispute] = relationship(back_populates="messages")
