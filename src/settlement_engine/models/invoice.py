"""Invoice, ledger transaction and escrow history models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engine.models.base import (
    Base,
    TimestampMixin,
    UpdatedAtMixin,
    UUIDPrimaryKeyMixin,
)

if TYPE_CHECKING:
    from settlement_engine.models.user import User


class Invoice(Base, UUIDPrimaryKeyMixin, TimestampMixin, UpdatedAtMixin):
    """An invoice issued by a freelancer to a client.

    ``status`` only moves along the edges in ``InvoiceStateMachine``;
    ``escrow_status`` is meaningful only when ``escrow_enabled``.
    """

    __tablename__ = "invoice"

    invoice_number: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_email: Mapped[str] = mapped_column(String, nullable=False)
    client_name: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")

    escrow_enabled: Mapped[bool] = mapped_column(nullable=False, default=False)
    escrow_status: Mapped[str] = mapped_column(String, nullable=False, default="none")
    escrow_release_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    escrow_released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    escrow_disputed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    due_date: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="invoice_amount_ck"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'disputed', 'cancelled')",
            name="invoice_status_ck",
        ),
        CheckConstraint(
            "escrow_status IN ('none', 'held', 'released', 'disputed')",
            name="invoice_escrow_status_ck",
        ),
        CheckConstraint(
            "escrow_enabled OR escrow_status = 'none'",
            name="invoice_escrow_enabled_ck",
        ),
    )

    # Relationships
    user: Mapped[User] = relationship()
    escrow_events: Mapped[list[EscrowEvent]] = relationship(
        back_populates="invoice",
        order_by="EscrowEvent.created_at",
    )


class Transaction(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Ledger entry recording money movement. Immutable once completed."""

    __tablename__ = "ledger_transaction"

    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    invoice_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("invoice.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    bank_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "type IN ('incoming', 'withdrawal', 'refund', 'payment')",
            name="ledger_transaction_type_ck",
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ledger_transaction_status_ck",
        ),
        CheckConstraint("amount > 0", name="ledger_transaction_amount_ck"),
    )


class EscrowEvent(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Append-only escrow history entry. Never updated or deleted."""

    __tablename__ = "escrow_event"

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    actor_type: Mapped[str] = mapped_column(String, nullable=False)
    actor_email: Mapped[str] = mapped_column(String, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint(
            "event_type IN ('created', 'held', 'released', 'disputed')",
            name="escrow_event_type_ck",
        ),
        CheckConstraint(
            "actor_type IN ('client', 'freelancer', 'admin', 'system')",
            name="escrow_event_actor_ck",
        ),
        Index("escrow_event_invoice", "invoice_id", "created_at"),
    )

    # Relationships
    invoice: Mapped[Invoice] = relationship(back_populates="escrow_events")
