"""Condition evaluators, one per alert type.

Each evaluator answers "has this alert's condition become true?" against a
pre-loaded ``EvaluationContext`` and returns a ``TriggerResult``. No I/O and
no mutation: suppression, state updates and persistence belong to the
deduplication engine and the orchestrator.

Evaluators are selected by ``Alert.alert_type`` through ``EVALUATORS``.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

from src.alerts.conditions import (
    AccountThresholdConditions,
    GoalConditions,
    MerchantNameConditions,
    SpendingTargetConditions,
    TransactionLimitConditions,
    UpcomingBillConditions,
    parse_conditions,
)
from src.alerts.config import AlertConfig
from src.alerts.entities import budget_period
from src.alerts.schemas import Alert, EvaluationContext, TriggerResult
from src.alerts.state import GoalState, SpendingTargetState, UpcomingBillState, load_state

logger = logging.getLogger(__name__)


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


def highest_reached(ladder: list[int] | tuple[int, ...], percent: float, above: int) -> int | None:
    """Highest rung of ``ladder`` reached by ``percent`` that is above ``above``."""
    reached = [rung for rung in ladder if percent >= rung and rung > above]
    return max(reached) if reached else None


class AlertEvaluator(ABC):
    """Base for per-type evaluators."""

    alert_type: str

    def __init__(self, config: AlertConfig | None = None) -> None:
        self._config = config or AlertConfig()

    def conditions(self, alert: Alert) -> Any:
        """Typed conditions; raises ``AlertValidationError`` if malformed."""
        return parse_conditions(self.alert_type, alert.conditions)

    @abstractmethod
    def evaluate(self, alert: Alert, context: EvaluationContext) -> TriggerResult:
        """Evaluate ``alert`` against ``context``."""


class AccountThresholdEvaluator(AlertEvaluator):
    """Balance strictly below or above a threshold. Equality never fires."""

    alert_type = "account_threshold"

    def evaluate(self, alert: Alert, context: EvaluationContext) -> TriggerResult:
        cond: AccountThresholdConditions = self.conditions(alert)
        account = context.accounts.get(cond.account_id)
        if account is None:
            logger.warning(
                "Alert %s references account %s missing from context",
                alert.alert_id, cond.account_id,
            )
            return TriggerResult.quiet(alert.alert_id, reason="missing_account")

        if cond.direction == "below":
            fires = account.balance < cond.threshold
        else:
            fires = account.balance > cond.threshold

        if not fires:
            return TriggerResult.quiet(alert.alert_id)

        return TriggerResult(
            alert_id=alert.alert_id,
            fires=True,
            title=alert.name,
            message=(
                f"Your {account.name} balance is {cond.direction} "
                f"{_money(cond.threshold)}. Current balance: {_money(account.balance)}"
            ),
            metadata={
                "account_id": account.account_id,
                "current_balance": f"{account.balance:.2f}",
                "threshold": f"{cond.threshold:.2f}",
                "direction": cond.direction,
            },
        )


class GoalEvaluator(AlertEvaluator):
    """Fires the highest newly reached progress milestone."""

    alert_type = "goal"

    def evaluate(self, alert: Alert, context: EvaluationContext) -> TriggerResult:
        cond: GoalConditions = self.conditions(alert)
        goal = context.goals.get(cond.goal_id)
        if goal is None:
            logger.warning(
                "Alert %s references goal %s missing from context",
                alert.alert_id, cond.goal_id,
            )
            return TriggerResult.quiet(alert.alert_id, reason="missing_goal")

        state: GoalState = load_state(self.alert_type, alert.evaluation_metadata)
        ladder = cond.ladder(self._config.goal_milestones)
        progress = goal.progress_percent
        milestone = highest_reached(ladder, progress, state.highest_notified)
        if milestone is None:
            return TriggerResult.quiet(alert.alert_id, progress=round(progress, 2))

        return TriggerResult(
            alert_id=alert.alert_id,
            fires=True,
            title=alert.name,
            message=(
                f'Your goal "{goal.name}" has reached {progress:.1f}% completion '
                f"({milestone}% milestone)!"
            ),
            metadata={
                "goal_id": goal.goal_id,
                "goal_type": goal.goal_type,
                "progress": round(progress, 2),
                "milestone": milestone,
            },
        )


class MerchantNameEvaluator(AlertEvaluator):
    """Triggering transaction's merchant matches the pattern."""

    alert_type = "merchant_name"

    def evaluate(self, alert: Alert, context: EvaluationContext) -> TriggerResult:
        cond: MerchantNameConditions = self.conditions(alert)
        txn = context.transaction
        if txn is None or not txn.merchant_name:
            return TriggerResult.quiet(alert.alert_id)

        merchant = txn.merchant_name.strip().lower()
        pattern = cond.merchant_pattern.lower()
        if cond.match_type == "exact":
            fires = merchant == pattern
        else:
            fires = pattern in merchant

        if not fires:
            return TriggerResult.quiet(alert.alert_id)

        amount = abs(txn.amount)
        return TriggerResult(
            alert_id=alert.alert_id,
            fires=True,
            title=alert.name,
            message=f"Transaction detected: {txn.merchant_name} for {_money(amount)}",
            metadata={
                "transaction_id": txn.transaction_id,
                "merchant_name": txn.merchant_name,
                "amount": f"{amount:.2f}",
                "pattern": cond.merchant_pattern,
                "match_type": cond.match_type,
            },
        )


class SpendingTargetEvaluator(AlertEvaluator):
    """Fires the highest newly reached usage threshold in the current period."""

    alert_type = "spending_target"

    def evaluate(self, alert: Alert, context: EvaluationContext) -> TriggerResult:
        cond: SpendingTargetConditions = self.conditions(alert)
        budget = context.budgets.get(cond.budget_id)
        if budget is None:
            logger.warning(
                "Alert %s references budget %s missing from context",
                alert.alert_id, cond.budget_id,
            )
            return TriggerResult.quiet(alert.alert_id, reason="missing_budget")

        period = budget_period(context.now.date())
        state: SpendingTargetState = load_state(self.alert_type, alert.evaluation_metadata)
        already_sent = max(state.sent_in(period), default=0)
        ladder = cond.ladder(self._config.spending_thresholds)
        percent = budget.percent_used
        threshold = highest_reached(ladder, percent, already_sent)
        if threshold is None:
            return TriggerResult.quiet(alert.alert_id, percent_used=round(percent, 2))

        return TriggerResult(
            alert_id=alert.alert_id,
            fires=True,
            title=alert.name,
            message=(
                f'Your "{budget.name}" budget is at {percent:.1f}% '
                f"({_money(budget.spent)} of {_money(budget.budget_amount)})"
            ),
            metadata={
                "budget_id": budget.budget_id,
                "spent": f"{budget.spent:.2f}",
                "budget_amount": f"{budget.budget_amount:.2f}",
                "percent_used": round(percent, 2),
                "threshold": threshold,
                "period": period,
            },
        )


class TransactionLimitEvaluator(AlertEvaluator):
    """Any transaction whose absolute amount reaches the limit."""

    alert_type = "transaction_limit"

    def evaluate(self, alert: Alert, context: EvaluationContext) -> TriggerResult:
        cond: TransactionLimitConditions = self.conditions(alert)
        txn = context.transaction
        if txn is None:
            return TriggerResult.quiet(alert.alert_id)

        if cond.account_id is not None and txn.account_id != cond.account_id:
            return TriggerResult.quiet(alert.alert_id)

        amount = abs(txn.amount)
        if amount < cond.amount:
            return TriggerResult.quiet(alert.alert_id)

        label = txn.description or txn.merchant_name or "Transaction"
        return TriggerResult(
            alert_id=alert.alert_id,
            fires=True,
            title=alert.name,
            message=(
                f"Large transaction detected: {label} for {_money(amount)} "
                f"exceeds your limit of {_money(cond.amount)}"
            ),
            metadata={
                "transaction_id": txn.transaction_id,
                "account_id": txn.account_id,
                "amount": f"{amount:.2f}",
                "limit": f"{cond.amount:.2f}",
                "description": txn.description,
            },
        )


class UpcomingBillEvaluator(AlertEvaluator):
    """Next occurrence due within ``days_before`` days and not yet notified."""

    alert_type = "upcoming_bill"

    def evaluate(self, alert: Alert, context: EvaluationContext) -> TriggerResult:
        cond: UpcomingBillConditions = self.conditions(alert)
        bill = context.bills.get(cond.bill_id)
        if bill is None:
            logger.warning(
                "Alert %s references bill %s missing from context",
                alert.alert_id, cond.bill_id,
            )
            return TriggerResult.quiet(alert.alert_id, reason="missing_bill")

        today = context.now.date()
        due = bill.next_due_date(today)
        if due is None:
            return TriggerResult.quiet(alert.alert_id)

        days_until_due = (due - today).days
        if not 0 <= days_until_due <= cond.days_before:
            return TriggerResult.quiet(alert.alert_id, days_until_due=days_until_due)

        state: UpcomingBillState = load_state(self.alert_type, alert.evaluation_metadata)
        if state.last_due_date_notified == due:
            return TriggerResult.quiet(alert.alert_id, due_date=due.isoformat())

        if days_until_due == 0:
            when = "today"
        elif days_until_due == 1:
            when = "tomorrow"
        else:
            when = f"in {days_until_due} days"

        return TriggerResult(
            alert_id=alert.alert_id,
            fires=True,
            title=alert.name,
            message=f'Bill "{bill.name}" for {_money(bill.amount)} is due {when}',
            metadata={
                "bill_id": bill.bill_id,
                "amount": f"{bill.amount:.2f}",
                "due_date": due.isoformat(),
                "days_until_due": days_until_due,
                "days_before_alert": cond.days_before,
            },
        )


EVALUATOR_CLASSES: dict[str, type[AlertEvaluator]] = {
    cls.alert_type: cls
    for cls in (
        AccountThresholdEvaluator,
        GoalEvaluator,
        MerchantNameEvaluator,
        SpendingTargetEvaluator,
        TransactionLimitEvaluator,
        UpcomingBillEvaluator,
    )
}


def build_evaluators(config: AlertConfig | None = None) -> dict[str, AlertEvaluator]:
    """Instantiate one evaluator per alert type."""
    config = config or AlertConfig()
    return {alert_type: cls(config) for alert_type, cls in EVALUATOR_CLASSES.items()}


def get_evaluator(alert_type: str, config: AlertConfig | None = None) -> AlertEvaluator:
    """Evaluator for ``alert_type``.

    Raises:
        KeyError: Unknown alert type.
    """
    return EVALUATOR_CLASSES[alert_type](config)
