"""Savings goal API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Response, status

from settlement_engine.api.dependencies import CurrentCaller, DbSession
from settlement_engine.api.schemas import (
    ErrorResponse,
    SavingsGoalCreate,
    SavingsGoalListResponse,
    SavingsGoalResponse,
    SavingsGoalUpdate,
    SavingsReleaseResponse,
    SavingsSummary,
)
from settlement_engine.models import SavingsGoal
from settlement_engine.services.savings_service import SavingsService, goal_progress_percent

router = APIRouter(prefix="/savings/goals", tags=["savings"])

_ERRORS = {400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}


def _goal_response(goal: SavingsGoal) -> SavingsGoalResponse:
    response = SavingsGoalResponse.model_validate(goal)
    response.progress = goal_progress_percent(goal)
    return response


@router.get("", response_model=SavingsGoalListResponse)
async def list_goals(db: DbSession, caller: CurrentCaller) -> SavingsGoalListResponse:
    """List goals with the percentage budget summary."""
    summary = await SavingsService(db).list_goals(caller.user_id)
    return SavingsGoalListResponse(
        goals=[_goal_response(g) for g in summary.goals],
        summary=SavingsSummary(
            total_goals=summary.total_goals,
            active_goals=summary.active_goals,
            total_active_percentage=summary.total_active_percentage,
            remaining_percentage=summary.remaining_percentage,
        ),
    )


@router.post(
    "",
    response_model=SavingsGoalResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
)
async def create_goal(
    payload: SavingsGoalCreate,
    db: DbSession,
    caller: CurrentCaller,
) -> SavingsGoalResponse:
    goal = await SavingsService(db).create_goal(
        caller.user_id,
        title=payload.title,
        target_amount=payload.target_amount,
        savings_percentage=payload.savings_percentage,
    )
    await db.commit()
    return _goal_response(goal)


@router.get("/{goal_id}", response_model=SavingsGoalResponse, responses=_ERRORS)
async def get_goal(goal_id: UUID, db: DbSession, caller: CurrentCaller) -> SavingsGoalResponse:
    goal = await SavingsService(db).get_goal(caller.user_id, goal_id)
    return _goal_response(goal)


@router.patch("/{goal_id}", response_model=SavingsGoalResponse, responses=_ERRORS)
async def update_goal(
    goal_id: UUID,
    payload: SavingsGoalUpdate,
    db: DbSession,
    caller: CurrentCaller,
) -> SavingsGoalResponse:
    """Pause or resume a goal."""
    goal = await SavingsService(db).update_goal(caller.user_id, goal_id, payload.is_active)
    await db.commit()
    return _goal_response(goal)


@router.post("/{goal_id}/release", response_model=SavingsReleaseResponse, responses=_ERRORS)
async def release_goal(
    goal_id: UUID,
    db: DbSession,
    caller: CurrentCaller,
) -> SavingsReleaseResponse:
    """Return a goal's saved funds to the main balance."""
    goal, released = await SavingsService(db).release_goal(caller.user_id, goal_id)
    await db.commit()
    return SavingsReleaseResponse(goal=_goal_response(goal), released_amount=released)


@router.delete("/{goal_id}", status_code=status.HTTP_204_NO_CONTENT, responses=_ERRORS)
async def delete_goal(goal_id: UUID, db: DbSession, caller: CurrentCaller) -> Response:
    await SavingsService(db).delete_goal(caller.user_id, goal_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
