"""Referral API endpoints."""

from fastapi import APIRouter

from settlement_engine.api.dependencies import CurrentCaller, DbSession
from settlement_engine.api.schemas import (
    ErrorResponse,
    ReferralApplyRequest,
    ReferralHistoryItem,
    ReferralStatsResponse,
)
from settlement_engine.services.referral_service import ReferralService

router = APIRouter(prefix="/referrals", tags=["referrals"])


@router.get("/stats", response_model=ReferralStatsResponse)
async def referral_stats(db: DbSession, caller: CurrentCaller) -> ReferralStatsResponse:
    """The caller's referral code, earnings and recent history."""
    referrals = ReferralService(db)
    code = await referrals.ensure_referral_code(caller.user_id)
    await db.commit()
    stats = await referrals.get_stats(caller.user_id)
    history = await referrals.recent_history(caller.user_id, limit=10)
    return ReferralStatsResponse(
        referral_code=code,
        total_referred=stats.total_referred,
        total_earned=stats.total_earned,
        pending_payout=stats.pending_payout,
        recent_history=[
            ReferralHistoryItem(date=h.date, user=h.user, earned=h.earned) for h in history
        ],
    )


@router.post(
    "/apply",
    status_code=204,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def apply_referral_code(
    payload: ReferralApplyRequest,
    db: DbSession,
    caller: CurrentCaller,
) -> None:
    """Record who referred the caller."""
    await ReferralService(db).link_referrer(caller.user_id, payload.code)
    await db.commit()
