"""Savings goal model."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.models.base import (
    Base,
    TimestampMixin,
    UpdatedAtMixin,
    UUIDPrimaryKeyMixin,
)


class SavingsGoal(Base, UUIDPrimaryKeyMixin, TimestampMixin, UpdatedAtMixin):
    """A user's savings goal, funded by a percentage of each settlement."""

    __tablename__ = "savings_goal"

    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    target_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 6), nullable=False, default=Decimal("0")
    )
    savings_percentage: Mapped[int] = mapped_column(nullable=False)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="in_progress")

    __table_args__ = (
        CheckConstraint("target_amount > 0", name="savings_goal_target_ck"),
        CheckConstraint("current_amount >= 0", name="savings_goal_current_ck"),
        CheckConstraint(
            "savings_percentage BETWEEN 1 AND 50",
            name="savings_goal_percentage_ck",
        ),
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'released')",
            name="savings_goal_status_ck",
        ),
        Index("savings_goal_active", "user_id", "is_active", "status"),
    )
