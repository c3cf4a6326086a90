"""Tests for savings allocation and goal lifecycle."""

from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings, strategies as st

from settlement_engine.errors import InvalidStateError, NotFoundError, ValidationFailedError
from settlement_engine.models import SavingsGoal
from settlement_engine.services.savings_service import (
    GoalSnapshot,
    SavingsService,
    allocate,
    goal_progress_percent,
)


def snapshot(percentage: int, current: str = "0", target: str = "1000", title: str = "Goal") -> GoalSnapshot:
    return GoalSnapshot(
        goal_id=uuid4(),
        title=title,
        current_amount=Decimal(current),
        target_amount=Decimal(target),
        savings_percentage=percentage,
    )


class TestAllocate:
    """Pure allocation arithmetic."""

    def test_no_goals_keeps_everything_in_main_balance(self):
        result = allocate(Decimal("250.00"), [])

        assert result.processed is False
        assert result.total_saved == Decimal("0")
        assert result.main_balance == Decimal("250.00")
        assert result.goal_updates == ()

    def test_percentages_applied_per_goal(self):
        result = allocate(Decimal("1000.00"), [snapshot(10), snapshot(25)])

        assert result.processed is True
        assert [u.amount_added for u in result.goal_updates] == [Decimal("100"), Decimal("250")]
        assert result.total_saved == Decimal("350")
        assert result.main_balance == Decimal("650")

    def test_goal_reaching_target_is_completed(self):
        result = allocate(Decimal("1000.00"), [snapshot(10, current="950", target="1000")])

        update = result.goal_updates[0]
        assert update.new_total == Decimal("1050")
        assert update.completed is True

    def test_goal_short_of_target_is_not_completed(self):
        result = allocate(Decimal("100.00"), [snapshot(10, current="0", target="1000")])

        assert result.goal_updates[0].completed is False

    @settings(max_examples=200)
    @given(
        amount=st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1000000"), places=2),
        percentages=st.lists(st.integers(min_value=1, max_value=50), min_size=1, max_size=5).filter(
            lambda ps: sum(ps) <= 50
        ),
    )
    def test_allocation_conserves_amount(self, amount, percentages):
        """Saved plus main balance always equals the paid amount."""
        result = allocate(amount, [snapshot(p) for p in percentages])

        assert result.total_saved + result.main_balance == amount
        assert sum(u.amount_added for u in result.goal_updates) == result.total_saved
        assert result.total_saved <= amount / 2
        assert result.main_balance >= amount / 2


class TestGoalProgress:
    def test_progress_is_capped_at_100(self):
        goal = SavingsGoal(
            user_id=uuid4(),
            title="Laptop",
            target_amount=Decimal("100"),
            current_amount=Decimal("150"),
            savings_percentage=10,
        )
        assert goal_progress_percent(goal) == Decimal("100.00")

    def test_progress_rounded_to_two_places(self):
        goal = SavingsGoal(
            user_id=uuid4(),
            title="Laptop",
            target_amount=Decimal("300"),
            current_amount=Decimal("100"),
            savings_percentage=10,
        )
        assert goal_progress_percent(goal) == Decimal("33.33")


class TestSavingsGoals:
    """Goal lifecycle against the database."""

    async def test_create_goal(self, session, freelancer):
        service = SavingsService(session)
        goal = await service.create_goal(freelancer.id, "  Emergency fund ", Decimal("5000"), 20)

        assert goal.title == "Emergency fund"
        assert goal.status == "in_progress"
        assert goal.is_active is True
        assert goal.current_amount == Decimal("0")

    async def test_ceiling_enforced_on_create(self, session, freelancer):
        service = SavingsService(session)
        await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 30)
        await service.create_goal(freelancer.id, "Holiday", Decimal("2000"), 15)

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.create_goal(freelancer.id, "Car", Decimal("9000"), 10)

        message = exc_info.value.message
        assert "Cannot exceed 50% total savings" in message
        assert "Current: 45%" in message
        assert "Requested: 10%" in message
        assert "Available: 5%" in message

    async def test_ceiling_allows_exactly_fifty(self, session, freelancer):
        service = SavingsService(session)
        await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 30)
        await service.create_goal(freelancer.id, "Holiday", Decimal("2000"), 20)

        summary = await service.list_goals(freelancer.id)
        assert summary.total_active_percentage == 50
        assert summary.remaining_percentage == 0

    @pytest.mark.parametrize("percentage", [0, 51, -5])
    async def test_percentage_out_of_range(self, session, freelancer, percentage):
        with pytest.raises(ValidationFailedError):
            await SavingsService(session).create_goal(freelancer.id, "Goal", Decimal("100"), percentage)

    async def test_title_too_long(self, session, freelancer):
        with pytest.raises(ValidationFailedError):
            await SavingsService(session).create_goal(freelancer.id, "x" * 101, Decimal("100"), 10)

    async def test_paused_goals_do_not_count_against_ceiling(self, session, freelancer):
        service = SavingsService(session)
        taxes = await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 40)
        await service.update_goal(freelancer.id, taxes.id, is_active=False)

        goal = await service.create_goal(freelancer.id, "Holiday", Decimal("2000"), 30)
        assert goal.is_active is True

    async def test_resume_rechecks_ceiling(self, session, freelancer):
        service = SavingsService(session)
        taxes = await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 40)
        await service.update_goal(freelancer.id, taxes.id, is_active=False)
        await service.create_goal(freelancer.id, "Holiday", Decimal("2000"), 30)

        with pytest.raises(ValidationFailedError, match="Cannot reactivate"):
            await service.update_goal(freelancer.id, taxes.id, is_active=True)

    async def test_completed_goal_cannot_resume(self, session, freelancer):
        service = SavingsService(session)
        goal = await service.create_goal(freelancer.id, "Small", Decimal("10"), 10)
        await service.apply_allocation(freelancer.id, Decimal("100"))

        with pytest.raises(InvalidStateError):
            await service.update_goal(freelancer.id, goal.id, is_active=True)

    async def test_other_users_goal_is_not_found(self, session, freelancer, stranger):
        service = SavingsService(session)
        goal = await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 10)

        with pytest.raises(NotFoundError):
            await service.get_goal(stranger.id, goal.id)

    async def test_apply_allocation_updates_active_goals_only(self, session, freelancer):
        service = SavingsService(session)
        taxes = await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 20)
        paused = await service.create_goal(freelancer.id, "Paused", Decimal("5000"), 10)
        await service.update_goal(freelancer.id, paused.id, is_active=False)

        result = await service.apply_allocation(freelancer.id, Decimal("1000.00"))

        assert result.processed is True
        assert result.total_saved == Decimal("200")
        assert result.main_balance == Decimal("800")
        assert taxes.current_amount == Decimal("200")
        assert paused.current_amount == Decimal("0")

    async def test_apply_allocation_completes_goal(self, session, freelancer):
        service = SavingsService(session)
        goal = await service.create_goal(freelancer.id, "Headphones", Decimal("150"), 20)

        await service.apply_allocation(freelancer.id, Decimal("1000.00"))

        assert goal.status == "completed"
        assert goal.is_active is False
        assert goal_progress_percent(goal) == Decimal("100.00")

    async def test_release_zeroes_goal(self, session, freelancer):
        service = SavingsService(session)
        goal = await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 20)
        await service.apply_allocation(freelancer.id, Decimal("500.00"))

        released_goal, released = await service.release_goal(freelancer.id, goal.id)

        assert released == Decimal("100")
        assert released_goal.current_amount == Decimal("0")
        assert released_goal.status == "released"
        assert released_goal.is_active is False

    async def test_release_twice_rejected(self, session, freelancer):
        service = SavingsService(session)
        goal = await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 20)
        await service.release_goal(freelancer.id, goal.id)

        with pytest.raises(InvalidStateError):
            await service.release_goal(freelancer.id, goal.id)

    async def test_delete_requires_release_of_funds(self, session, freelancer):
        service = SavingsService(session)
        goal = await service.create_goal(freelancer.id, "Taxes", Decimal("5000"), 20)
        await service.apply_allocation(freelancer.id, Decimal("500.00"))

        with pytest.raises(InvalidStateError):
            await service.delete_goal(freelancer.id, goal.id)

        await service.release_goal(freelancer.id, goal.id)
        await service.delete_goal(freelancer.id, goal.id)

        summary = await service.list_goals(freelancer.id)
        assert summary.total_goals == 0
