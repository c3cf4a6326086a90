"""Signed audit event and settlement step log models."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.models.base import (
    Base,
    TimestampMixin,
    UpdatedAtMixin,
    UUIDPrimaryKeyMixin,
    utcnow,
)


class AuditEvent(Base, UUIDPrimaryKeyMixin):
    """Append-only, HMAC-signed lifecycle event for an invoice.

    ``created_at`` is part of the signed payload, so it is always set by the
    application rather than the database.
    """

    __tablename__ = "audit_event"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("app_user.id", ondelete="SET NULL"),
        nullable=True,
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", nullable=False, default=dict
    )
    signature: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (Index("audit_event_invoice", "invoice_id", "created_at"),)


class SettlementStepRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin, UpdatedAtMixin):
    """Saga log: outcome of one fan-out step for one settled invoice."""

    __tablename__ = "settlement_step"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    step: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("invoice_id", "step", name="settlement_step_once_uq"),
        CheckConstraint(
            "status IN ('completed', 'failed')",
            name="settlement_step_status_ck",
        ),
    )
