"""Tests for derived entity values and per-type evaluation state."""

from datetime import date
from decimal import Decimal

import pytest

from src.alerts.entities import Bill, Budget, Goal, budget_period
from src.alerts.state import (
    STATE_VERSION,
    AccountThresholdState,
    GoalState,
    SpendingTargetState,
    StatelessState,
    UpcomingBillState,
    load_state,
)


def _bill(due: date, frequency: str) -> Bill:
    return Bill(bill_id=1, user_id=1, name="b", amount=Decimal("10"), due_date=due, frequency=frequency)


class TestGoalProgress:
    def test_savings(self):
        goal = Goal(1, 1, "g", "savings", Decimal("1000"), Decimal("250"))
        assert goal.progress_percent == pytest.approx(25.0)

    def test_payoff_counts_down_from_initial(self):
        goal = Goal(1, 1, "loan", "payoff", Decimal("0"), Decimal("400"), initial_amount=Decimal("1000"))
        assert goal.progress_percent == pytest.approx(60.0)

    def test_payoff_without_initial_is_zero(self):
        goal = Goal(1, 1, "loan", "payoff", Decimal("0"), Decimal("400"))
        assert goal.progress_percent == 0.0

    def test_zero_target(self):
        goal = Goal(1, 1, "g", "savings", Decimal("0"), Decimal("10"))
        assert goal.progress_percent == 0.0


class TestBudget:
    def test_percent_used(self):
        budget = Budget(1, 1, "food", Decimal("500"), spent=Decimal("450"))
        assert budget.percent_used == pytest.approx(90.0)

    def test_zero_budget(self):
        assert Budget(1, 1, "food", Decimal("0"), spent=Decimal("5")).percent_used == 0.0

    def test_period_key(self):
        assert budget_period(date(2026, 3, 9)) == "2026-03"


class TestBillNextDueDate:
    def test_future_anchor_returned_as_is(self):
        assert _bill(date(2026, 4, 1), "monthly").next_due_date(date(2026, 3, 15)) == date(2026, 4, 1)

    def test_monthly_rolls_forward(self):
        assert _bill(date(2026, 1, 18), "monthly").next_due_date(date(2026, 3, 15)) == date(2026, 3, 18)

    def test_monthly_after_this_months_date(self):
        assert _bill(date(2026, 1, 10), "monthly").next_due_date(date(2026, 3, 15)) == date(2026, 4, 10)

    def test_month_end_clamped(self):
        assert _bill(date(2026, 1, 31), "monthly").next_due_date(date(2026, 2, 10)) == date(2026, 2, 28)

    def test_weekly_lands_on_today(self):
        assert _bill(date(2026, 3, 1), "weekly").next_due_date(date(2026, 3, 15)) == date(2026, 3, 15)

    def test_biweekly(self):
        assert _bill(date(2026, 3, 1), "biweekly").next_due_date(date(2026, 3, 16)) == date(2026, 3, 29)

    def test_quarterly(self):
        assert _bill(date(2025, 12, 5), "quarterly").next_due_date(date(2026, 3, 15)) == date(2026, 6, 5)

    def test_yearly_leap_day(self):
        assert _bill(date(2024, 2, 29), "yearly").next_due_date(date(2026, 3, 1)) == date(2027, 2, 28)

    def test_past_one_off_bill(self):
        assert _bill(date(2026, 1, 1), "once").next_due_date(date(2026, 3, 15)) is None


class TestLoadState:
    def test_empty_payload_gives_fresh_state(self):
        state = load_state("goal", None)
        assert isinstance(state, GoalState)
        assert state.milestones_notified == []

    def test_round_trip_goal(self):
        state = GoalState()
        state.record(50)
        state.record(25)
        loaded = load_state("goal", state.to_dict())
        assert loaded.milestones_notified == [25, 50]
        assert loaded.highest_notified == 50

    def test_newer_version_ignored(self):
        state = load_state("goal", {"version": STATE_VERSION + 1, "milestones_notified": [100]})
        assert state.milestones_notified == []

    def test_corrupt_payload_gives_fresh_state(self):
        state = load_state("goal", {"milestones_notified": ["lots"]})
        assert state.milestones_notified == []

    def test_bill_state_parses_iso_date(self):
        state = load_state("upcoming_bill", {"last_due_date_notified": "2026-03-18"})
        assert isinstance(state, UpcomingBillState)
        assert state.last_due_date_notified == date(2026, 3, 18)

    def test_account_threshold_state(self):
        state = load_state("account_threshold", {"last_direction": "below"})
        assert isinstance(state, AccountThresholdState)
        assert state.last_direction == "below"

    @pytest.mark.parametrize("alert_type", ["merchant_name", "transaction_limit"])
    def test_stateless_types(self, alert_type):
        assert isinstance(load_state(alert_type, {"anything": 1}), StatelessState)


class TestSpendingTargetState:
    def test_record_resets_on_new_period(self):
        state = SpendingTargetState()
        state.record("2026-02", 50)
        state.record("2026-02", 80)
        assert state.sent_in("2026-02") == [50, 80]

        state.record("2026-03", 50)
        assert state.period == "2026-03"
        assert state.thresholds_sent == [50]

    def test_sent_in_other_period_is_empty(self):
        state = SpendingTargetState(period="2026-02", thresholds_sent=[50, 80])
        assert state.sent_in("2026-03") == []
