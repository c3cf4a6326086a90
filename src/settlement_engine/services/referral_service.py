"""Referral codes and commission accrual."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from settlement_engine.config import get_settings
from settlement_engine.errors import ConflictError, NotFoundError, ValidationFailedError
from settlement_engine.database import upsert_insert
from settlement_engine.models import ReferralEarning, User, utcnow
from settlement_engine.services.caller import mask_email

logger = logging.getLogger(__name__)

REFERRAL_CODE_PREFIX = "REF"
MAX_CODE_ATTEMPTS = 10


def generate_referral_code() -> str:
    """``REF-`` followed by 8 upper-case hex characters."""
    return f"{REFERRAL_CODE_PREFIX}-{secrets.token_hex(4).upper()}"


@dataclass(frozen=True)
class Commission:
    platform_fee: Decimal
    referral_commission: Decimal


def calculate_commission(
    invoice_amount: Decimal,
    platform_fee_rate: Decimal | None = None,
    commission_rate: Decimal | None = None,
) -> Commission:
    """Platform fee is a share of the invoice; commission a share of the fee."""
    settings = get_settings()
    fee_rate = platform_fee_rate if platform_fee_rate is not None else settings.platform_fee_rate
    rate = commission_rate if commission_rate is not None else settings.referral_commission_rate
    platform_fee = invoice_amount * fee_rate
    return Commission(platform_fee=platform_fee, referral_commission=platform_fee * rate)


@dataclass(frozen=True)
class ReferralStats:
    total_referred: int
    total_earned: Decimal
    pending_payout: Decimal


@dataclass(frozen=True)
class ReferralHistoryEntry:
    date: date
    user: str
    earned: Decimal


class ReferralService:
    """Accrues referral commission and reports on it."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_referrer(self, user_id: UUID) -> User | None:
        """Return the user who referred ``user_id``, if any."""
        user = await self.session.get(User, user_id, options=[selectinload(User.referred_by)])
        if user is None:
            raise NotFoundError("User", user_id)
        return user.referred_by

    async def find_user_by_code(self, code: str) -> User | None:
        result = await self.session.execute(
            select(User).where(User.referral_code == code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def ensure_referral_code(self, user_id: UUID) -> str:
        """Return the user's referral code, generating one on first use."""
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        if user.referral_code:
            return user.referral_code

        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_referral_code()
            if await self.find_user_by_code(code) is None:
                user.referral_code = code
                await self.session.flush()
                return code

        raise ConflictError("Failed to generate unique referral code")

    async def link_referrer(self, user_id: UUID, code: str) -> User:
        """Record that ``user_id`` was referred by the owner of ``code``.

        A user can be referred once and never by themselves.
        """
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        if user.referred_by_id is not None:
            raise ConflictError("Referrer already recorded")

        referrer = await self.find_user_by_code(code)
        if referrer is None:
            raise NotFoundError("Referral code", code)
        if referrer.id == user.id:
            raise ValidationFailedError("Cannot use your own referral code")

        user.referred_by_id = referrer.id
        await self.session.flush()
        return user

    async def create_earning(
        self,
        referrer_id: UUID,
        referred_user_id: UUID,
        invoice_id: UUID,
        invoice_amount: Decimal,
    ) -> ReferralEarning:
        """Accrue commission for a settled invoice.

        Idempotent per (referrer, invoice): an existing earning is returned
        unchanged.
        """
        existing = await self._get_earning(referrer_id, invoice_id)
        if existing is not None:
            return existing

        commission = calculate_commission(invoice_amount)
        result = await self.session.execute(
            upsert_insert(self.session, ReferralEarning)
            .values(
                id=uuid4(),
                referrer_id=referrer_id,
                referred_user_id=referred_user_id,
                invoice_id=invoice_id,
                amount=commission.referral_commission,
                platform_fee=commission.platform_fee,
                status="earned",
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["referrer_id", "invoice_id"])
        )
        earning = await self._get_earning(referrer_id, invoice_id)
        if result.rowcount == 0:
            # Lost a race with a concurrent re-drive
            return earning

        logger.info(
            "Referral commission %s accrued to %s for invoice %s",
            earning.amount,
            referrer_id,
            invoice_id,
        )
        return earning

    async def get_stats(self, user_id: UUID) -> ReferralStats:
        total_referred = await self.session.scalar(
            select(func.count()).select_from(User).where(User.referred_by_id == user_id)
        )
        total_earned = await self.session.scalar(
            select(func.coalesce(func.sum(ReferralEarning.amount), 0)).where(
                ReferralEarning.referrer_id == user_id
            )
        )
        pending = await self.session.scalar(
            select(func.coalesce(func.sum(ReferralEarning.amount), 0)).where(
                ReferralEarning.referrer_id == user_id,
                ReferralEarning.status == "earned",
            )
        )
        return ReferralStats(
            total_referred=total_referred or 0,
            total_earned=Decimal(str(total_earned or 0)),
            pending_payout=Decimal(str(pending or 0)),
        )

    async def recent_history(self, user_id: UUID, limit: int = 10) -> list[ReferralHistoryEntry]:
        """Most recent earnings, with the referred user's email masked."""
        result = await self.session.execute(
            select(ReferralEarning)
            .where(ReferralEarning.referrer_id == user_id)
            .options(selectinload(ReferralEarning.referred_user))
            .order_by(ReferralEarning.created_at.desc())
            .limit(limit)
        )
        return [
            ReferralHistoryEntry(
                date=earning.created_at.date(),
                user=mask_email(earning.referred_user.email),
                earned=earning.amount,
            )
            for earning in result.scalars().all()
        ]

    async def _get_earning(self, referrer_id: UUID, invoice_id: UUID) -> ReferralEarning | None:
        result = await self.session.execute(
            select(ReferralEarning).where(
                ReferralEarning.referrer_id == referrer_id,
                ReferralEarning.invoice_id == invoice_id,
            )
        )
        return result.scalar_one_or_none()
