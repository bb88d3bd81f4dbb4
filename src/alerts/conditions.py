"""Typed condition models, one per alert type.

Alerts store their conditions as JSONB. Each alert type owns a pydantic
model describing the shape it expects; ``parse_conditions`` selects the
model by the alert's type discriminant and converts pydantic's
``ValidationError`` into ``AlertValidationError`` so the orchestrator can
skip the alert without aborting the run.
"""

from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.alerts.errors import AlertValidationError


class _Conditions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class AccountThresholdConditions(_Conditions):
    """Balance crossing a fixed amount."""

    account_id: int
    threshold: Decimal = Field(..., ge=0, decimal_places=2)
    direction: Literal["below", "above"]


def _floored(ladder: tuple[int, ...] | list[int], floor: int | None) -> tuple[int, ...]:
    """Rungs at or above ``floor``, with ``floor`` itself as the lowest rung."""
    if not floor:
        return tuple(ladder)
    return tuple(sorted({rung for rung in ladder if rung >= floor} | {floor}))


class GoalConditions(_Conditions):
    """Progress milestones on a savings or payoff goal.

    ``milestones`` overrides the configured ladder when present.
    ``milestone_percentage`` is the first milestone the owner wants to hear
    about; lower rungs are dropped.
    """

    goal_id: int
    milestones: tuple[int, ...] | None = None
    milestone_percentage: int | None = Field(default=None, ge=0, le=100)

    @field_validator("milestones")
    @classmethod
    def _valid_ladder(cls, value: tuple[int, ...] | None) -> tuple[int, ...] | None:
        if value is None:
            return None
        if not value or any(not 0 < m <= 100 for m in value):
            raise ValueError("milestones must be within 1..100")
        return tuple(sorted(set(value)))

    def ladder(self, default: list[int]) -> tuple[int, ...]:
        return _floored(self.milestones or default, self.milestone_percentage)


class MerchantNameConditions(_Conditions):
    """Transactions from a merchant matching a pattern."""

    merchant_pattern: str = Field(..., min_length=1)
    match_type: Literal["exact", "contains"] = "contains"

    @field_validator("merchant_pattern")
    @classmethod
    def _strip_pattern(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("merchant_pattern must not be blank")
        return value


class SpendingTargetConditions(_Conditions):
    """Budget usage thresholds within the current period.

    ``threshold_percentage`` is the lowest threshold reported; lower ones are
    dropped.
    """

    budget_id: int
    thresholds: tuple[int, ...] | None = None
    threshold_percentage: int | None = Field(default=None, ge=0, le=200)

    @field_validator("thresholds")
    @classmethod
    def _valid_ladder(cls, value: tuple[int, ...] | None) -> tuple[int, ...] | None:
        if value is None:
            return None
        if not value or any(not 0 < t <= 200 for t in value):
            raise ValueError("thresholds must be within 1..200")
        return tuple(sorted(set(value)))

    def ladder(self, default: list[int]) -> tuple[int, ...]:
        return _floored(self.thresholds or default, self.threshold_percentage)


class TransactionLimitConditions(_Conditions):
    """Any single transaction at or above an amount."""

    amount: Decimal = Field(..., ge=0, decimal_places=2)
    account_id: int | None = None


class UpcomingBillConditions(_Conditions):
    """Reminder a number of days before a bill is due."""

    bill_id: int
    days_before: int = Field(..., ge=1, le=30)


AlertConditions = (
    AccountThresholdConditions
    | GoalConditions
    | MerchantNameConditions
    | SpendingTargetConditions
    | TransactionLimitConditions
    | UpcomingBillConditions
)

CONDITION_MODELS: dict[str, type[_Conditions]] = {
    "account_threshold": AccountThresholdConditions,
    "goal": GoalConditions,
    "merchant_name": MerchantNameConditions,
    "spending_target": SpendingTargetConditions,
    "transaction_limit": TransactionLimitConditions,
    "upcoming_bill": UpcomingBillConditions,
}


def parse_conditions(alert_type: str, raw: dict[str, Any] | None) -> AlertConditions:
    """Validate raw JSON conditions against the model for ``alert_type``.

    Args:
        alert_type: Alert type discriminant.
        raw: Conditions as stored on the alert.

    Returns:
        The typed conditions model.

    Raises:
        AlertValidationError: Unknown type or conditions of the wrong shape.
    """
    model = CONDITION_MODELS.get(alert_type)
    if model is None:
        raise AlertValidationError(alert_type, [f"unknown alert type {alert_type!r}"])

    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise AlertValidationError(alert_type, errors) from e
