"""User and webhook subscription models."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engine.models.base import (
    Base,
    TimestampMixin,
    UpdatedAtMixin,
    UUIDPrimaryKeyMixin,
)


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin, UpdatedAtMixin):
    """A freelancer account, resolved from an identity-provider subject."""

    __tablename__ = "app_user"

    external_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    referral_code: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    referred_by_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("app_user.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Relationships
    referred_by: Mapped[User | None] = relationship(remote_side="User.id")


class WebhookSubscription(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A user's webhook endpoint, signed with its own secret."""

    __tablename__ = "webhook_subscription"

    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target_url: Mapped[str] = mapped_column(String, nullable=False)
    signing_secret: Mapped[str] = mapped_column(String, nullable=False)
    subscribed_events: Mapped[list[str]] = mapped_column(nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(nullable=True)
