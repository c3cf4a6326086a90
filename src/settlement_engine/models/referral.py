"""Referral earning model."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engine.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from settlement_engine.models.user import User


class ReferralEarning(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Commission owed to a referrer for one settled invoice.

    Unique per (referrer, invoice): a re-driven settlement cannot accrue twice.
    """

    __tablename__ = "referral_earning"

    referrer_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    referred_user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="earned")

    __table_args__ = (
        UniqueConstraint("referrer_id", "invoice_id", name="referral_earning_once_uq"),
        CheckConstraint("status IN ('earned', 'paid')", name="referral_earning_status_ck"),
    )

    # Relationships
    referred_user: Mapped[User] = relationship(foreign_keys=[referred_user_id])
