"""Savings goals and settlement-time allocation.

The percentage ceiling (sum of active, in-progress goal percentages) is
enforced when goals are created or resumed. Allocation trusts it and never
rejects.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.config import get_settings
from settlement_engine.errors import InvalidStateError, NotFoundError, ValidationFailedError
from settlement_engine.models import SavingsGoal, User
from settlement_engine.services.state_machine import GoalStatus

logger = logging.getLogger(__name__)

MIN_GOAL_PERCENTAGE = 1
MAX_GOAL_PERCENTAGE = 50
MAX_TITLE_LENGTH = 100


@dataclass(frozen=True)
class GoalSnapshot:
    """Allocation input for one active goal."""

    goal_id: UUID
    title: str
    current_amount: Decimal
    target_amount: Decimal
    savings_percentage: int


@dataclass(frozen=True)
class GoalAllocation:
    """Per-goal allocation delta."""

    goal_id: UUID
    title: str
    amount_added: Decimal
    new_total: Decimal
    completed: bool


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of distributing a paid amount across goals."""

    processed: bool
    total_saved: Decimal
    main_balance: Decimal
    goal_updates: tuple[GoalAllocation, ...] = ()


def allocate(amount: Decimal, goals: Sequence[GoalSnapshot]) -> AllocationResult:
    """Distribute ``amount`` across goals by their percentages.

    Each goal receives ``amount * percentage / 100``; a goal whose new total
    reaches its target is reported completed. The remainder stays in the
    main balance.
    """
    if not goals:
        return AllocationResult(processed=False, total_saved=Decimal("0"), main_balance=amount)

    total_saved = Decimal("0")
    updates = []
    for goal in goals:
        added = amount * Decimal(goal.savings_percentage) / Decimal(100)
        new_total = goal.current_amount + added
        total_saved += added
        updates.append(
            GoalAllocation(
                goal_id=goal.goal_id,
                title=goal.title,
                amount_added=added,
                new_total=new_total,
                completed=new_total >= goal.target_amount,
            )
        )

    return AllocationResult(
        processed=True,
        total_saved=total_saved,
        main_balance=amount - total_saved,
        goal_updates=tuple(updates),
    )


@dataclass(frozen=True)
class GoalSummary:
    """A user's goals plus the percentage budget."""

    goals: list[SavingsGoal]
    total_goals: int
    active_goals: int
    total_active_percentage: int
    remaining_percentage: int


def goal_progress_percent(goal: SavingsGoal) -> Decimal:
    """Progress towards target, capped at 100 and rounded to 2 places."""
    if goal.target_amount <= 0:
        return Decimal("0")
    progress = min(goal.current_amount / goal.target_amount * 100, Decimal(100))
    return progress.quantize(Decimal("0.01"))


def _counts_against_ceiling(goal: SavingsGoal) -> bool:
    return goal.is_active and goal.status == GoalStatus.IN_PROGRESS.value


class SavingsService:
    """Savings goal lifecycle and allocation."""

    def __init__(self, session: AsyncSession, max_total_percentage: int | None = None):
        self.session = session
        self.max_total_percentage = (
            max_total_percentage
            if max_total_percentage is not None
            else get_settings().savings_max_total_percentage
        )

    async def list_goals(self, user_id: UUID) -> GoalSummary:
        result = await self.session.execute(
            select(SavingsGoal)
            .where(SavingsGoal.user_id == user_id)
            .order_by(SavingsGoal.created_at.desc())
        )
        goals = list(result.scalars().all())
        active = [g for g in goals if _counts_against_ceiling(g)]
        total_active = sum(g.savings_percentage for g in active)
        return GoalSummary(
            goals=goals,
            total_goals=len(goals),
            active_goals=len(active),
            total_active_percentage=total_active,
            remaining_percentage=self.max_total_percentage - total_active,
        )

    async def get_goal(self, user_id: UUID, goal_id: UUID) -> SavingsGoal:
        goal = await self.session.get(SavingsGoal, goal_id)
        if goal is None or goal.user_id != user_id:
            raise NotFoundError("Savings goal", goal_id)
        return goal

    async def create_goal(
        self,
        user_id: UUID,
        title: str,
        target_amount: Decimal,
        savings_percentage: int,
    ) -> SavingsGoal:
        """Create an active goal, keeping the active percentage sum within the ceiling."""
        title = (title or "").strip()
        if not title or len(title) > MAX_TITLE_LENGTH:
            raise ValidationFailedError("Title must be 1-100 characters")
        if target_amount <= 0:
            raise ValidationFailedError("Target amount must be positive")
        if not MIN_GOAL_PERCENTAGE <= savings_percentage <= MAX_GOAL_PERCENTAGE:
            raise ValidationFailedError(
                f"Percentage must be between {MIN_GOAL_PERCENTAGE}% and {MAX_GOAL_PERCENTAGE}%"
            )

        await self._lock_user(user_id)
        current_total = await self._active_percentage(user_id)
        if current_total + savings_percentage > self.max_total_percentage:
            raise ValidationFailedError(
                f"Cannot exceed {self.max_total_percentage}% total savings. "
                f"Current: {current_total}%, Requested: {savings_percentage}%, "
                f"Available: {self.max_total_percentage - current_total}%"
            )

        goal = SavingsGoal(
            user_id=user_id,
            title=title,
            target_amount=target_amount,
            current_amount=Decimal("0"),
            savings_percentage=savings_percentage,
            is_active=True,
            status=GoalStatus.IN_PROGRESS.value,
        )
        self.session.add(goal)
        await self.session.flush()
        logger.info("Created savings goal %s (%d%%) for user %s", goal.id, savings_percentage, user_id)
        return goal

    async def update_goal(self, user_id: UUID, goal_id: UUID, is_active: bool) -> SavingsGoal:
        """Pause or resume a goal. Resuming re-checks the ceiling."""
        goal = await self.get_goal(user_id, goal_id)

        if is_active and not goal.is_active:
            if goal.status != GoalStatus.IN_PROGRESS.value:
                raise InvalidStateError("savings goal", goal.status, "only in-progress goals can be resumed")
            await self._lock_user(user_id)
            current_total = await self._active_percentage(user_id, exclude_goal_id=goal.id)
            if current_total + goal.savings_percentage > self.max_total_percentage:
                raise ValidationFailedError(
                    f"Cannot reactivate: would exceed {self.max_total_percentage}% limit "
                    f"(current: {current_total}%)"
                )

        goal.is_active = is_active
        await self.session.flush()
        return goal

    async def release_goal(self, user_id: UUID, goal_id: UUID) -> tuple[SavingsGoal, Decimal]:
        """Release a goal's funds back to the main balance.

        Returns the goal and the released amount.
        """
        goal = await self.get_goal(user_id, goal_id)
        if goal.status == GoalStatus.RELEASED.value:
            raise InvalidStateError("savings goal", goal.status, "funds already released")

        released = goal.current_amount
        goal.current_amount = Decimal("0")
        goal.status = GoalStatus.RELEASED.value
        goal.is_active = False
        await self.session.flush()
        logger.info("Released %s from savings goal %s", released, goal.id)
        return goal, released

    async def delete_goal(self, user_id: UUID, goal_id: UUID) -> None:
        goal = await self.get_goal(user_id, goal_id)
        if goal.current_amount > 0 and goal.status != GoalStatus.RELEASED.value:
            raise InvalidStateError(
                "savings goal", goal.status, "release funds before deleting"
            )
        await self.session.delete(goal)
        await self.session.flush()

    async def apply_allocation(self, user_id: UUID, amount: Decimal) -> AllocationResult:
        """Allocate a settled amount to the user's active goals. Caller commits."""
        result = await self.session.execute(
            select(SavingsGoal)
            .where(
                SavingsGoal.user_id == user_id,
                SavingsGoal.is_active.is_(True),
                SavingsGoal.status == GoalStatus.IN_PROGRESS.value,
            )
            .order_by(SavingsGoal.created_at)
            .with_for_update()
        )
        goals = {g.id: g for g in result.scalars().all()}
        allocation = allocate(
            amount,
            [
                GoalSnapshot(
                    goal_id=g.id,
                    title=g.title,
                    current_amount=g.current_amount,
                    target_amount=g.target_amount,
                    savings_percentage=g.savings_percentage,
                )
                for g in goals.values()
            ],
        )

        for update in allocation.goal_updates:
            goal = goals[update.goal_id]
            goal.current_amount = update.new_total
            if update.completed:
                goal.status = GoalStatus.COMPLETED.value
                goal.is_active = False

        await self.session.flush()
        return allocation

    async def _active_percentage(
        self, user_id: UUID, exclude_goal_id: UUID | None = None
    ) -> int:
        query = select(SavingsGoal).where(
            SavingsGoal.user_id == user_id,
            SavingsGoal.is_active.is_(True),
            SavingsGoal.status == GoalStatus.IN_PROGRESS.value,
        )
        if exclude_goal_id is not None:
            query = query.where(SavingsGoal.id != exclude_goal_id)
        result = await self.session.execute(query)
        return sum(g.savings_percentage for g in result.scalars().all())

    async def _lock_user(self, user_id: UUID) -> None:
        # Serializes goal changes per user on PostgreSQL; a no-op on SQLite
        await self.session.execute(select(User.id).where(User.id == user_id).with_for_update())
