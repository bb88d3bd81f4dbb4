"""Tests for typed alert conditions and their validation."""

from decimal import Decimal

import pytest

from src.alerts.conditions import (
    AccountThresholdConditions,
    GoalConditions,
    MerchantNameConditions,
    SpendingTargetConditions,
    TransactionLimitConditions,
    parse_conditions,
)
from src.alerts.errors import AlertValidationError


class TestParseConditions:
    def test_account_threshold(self):
        cond = parse_conditions(
            "account_threshold",
            {"account_id": 3, "threshold": "100.50", "direction": "below"},
        )
        assert isinstance(cond, AccountThresholdConditions)
        assert cond.threshold == Decimal("100.50")
        assert cond.direction == "below"

    def test_negative_threshold_rejected(self):
        with pytest.raises(AlertValidationError) as exc_info:
            parse_conditions(
                "account_threshold",
                {"account_id": 3, "threshold": -1, "direction": "below"},
            )
        assert exc_info.value.alert_type == "account_threshold"
        assert any("threshold" in err for err in exc_info.value.errors)

    def test_invalid_direction_rejected(self):
        with pytest.raises(AlertValidationError):
            parse_conditions(
                "account_threshold",
                {"account_id": 3, "threshold": 10, "direction": "sideways"},
            )

    def test_merchant_defaults_to_contains(self):
        cond = parse_conditions("merchant_name", {"merchant_pattern": "  Starbucks "})
        assert isinstance(cond, MerchantNameConditions)
        assert cond.match_type == "contains"
        assert cond.merchant_pattern == "Starbucks"

    def test_blank_merchant_pattern_rejected(self):
        with pytest.raises(AlertValidationError):
            parse_conditions("merchant_name", {"merchant_pattern": "   "})

    @pytest.mark.parametrize("days", [0, 31])
    def test_days_before_out_of_range(self, days):
        with pytest.raises(AlertValidationError):
            parse_conditions("upcoming_bill", {"bill_id": 1, "days_before": days})

    def test_goal_milestones_sorted_and_deduplicated(self):
        cond = parse_conditions("goal", {"goal_id": 1, "milestones": [75, 25, 25]})
        assert isinstance(cond, GoalConditions)
        assert cond.milestones == (25, 75)

    def test_goal_milestone_over_100_rejected(self):
        with pytest.raises(AlertValidationError):
            parse_conditions("goal", {"goal_id": 1, "milestones": [50, 120]})

    def test_transaction_limit_optional_account(self):
        cond = parse_conditions("transaction_limit", {"amount": 500})
        assert isinstance(cond, TransactionLimitConditions)
        assert cond.account_id is None

    def test_missing_required_field(self):
        with pytest.raises(AlertValidationError) as exc_info:
            parse_conditions("spending_target", {})
        assert any("budget_id" in err for err in exc_info.value.errors)

    def test_unknown_type(self):
        with pytest.raises(AlertValidationError):
            parse_conditions("net_worth", {})

    def test_none_treated_as_empty(self):
        with pytest.raises(AlertValidationError):
            parse_conditions("goal", None)

    def test_extra_fields_ignored(self):
        cond = parse_conditions("transaction_limit", {"amount": 10, "legacy": True})
        assert cond.amount == Decimal("10")

    def test_goal_milestone_percentage_floors_ladder(self):
        cond = parse_conditions("goal", {"goal_id": 1, "milestone_percentage": 75})
        assert cond.milestone_percentage == 75
        assert cond.ladder([25, 50, 75, 100]) == (75, 100)

    def test_goal_milestone_percentage_between_rungs(self):
        cond = parse_conditions("goal", {"goal_id": 1, "milestone_percentage": 60})
        assert cond.ladder([25, 50, 75, 100]) == (60, 75, 100)

    def test_goal_without_percentage_keeps_ladder(self):
        cond = parse_conditions("goal", {"goal_id": 1})
        assert cond.ladder([25, 50, 75, 100]) == (25, 50, 75, 100)

    def test_goal_milestone_percentage_over_100_rejected(self):
        with pytest.raises(AlertValidationError):
            parse_conditions("goal", {"goal_id": 1, "milestone_percentage": 150})

    def test_spending_threshold_percentage_floors_ladder(self):
        cond = parse_conditions("spending_target", {"budget_id": 1, "threshold_percentage": 90})
        assert isinstance(cond, SpendingTargetConditions)
        assert cond.ladder([50, 80, 90, 100]) == (90, 100)

    def test_spending_threshold_percentage_range(self):
        assert parse_conditions(
            "spending_target", {"budget_id": 1, "threshold_percentage": 150},
        ).ladder([50, 80, 90, 100]) == (150,)
        with pytest.raises(AlertValidationError):
            parse_conditions("spending_target", {"budget_id": 1, "threshold_percentage": 201})
