"""Read-only domain records the evaluators inspect.

Accounts, goals, budgets, bills and transactions are owned by other
services; only the fields the alert engine reads are modelled here.
Derived values (goal progress, budget usage, a bill's next occurrence)
live on the records so evaluators stay free of arithmetic.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Literal

GoalType = Literal["savings", "payoff"]
BillFrequency = Literal["once", "weekly", "biweekly", "monthly", "quarterly", "yearly"]

_HUNDRED = Decimal(100)


@dataclass
class Account:
    account_id: int
    user_id: int
    name: str
    balance: Decimal


@dataclass
class Goal:
    """A savings target or a debt payoff.

    Payoff goals count progress downwards from ``initial_amount``; when
    the goal never recorded one, the current amount stands in (0%).
    """

    goal_id: int
    user_id: int
    name: str
    goal_type: str
    target_amount: Decimal
    current_amount: Decimal
    initial_amount: Decimal | None = None

    @property
    def progress_percent(self) -> float:
        if self.goal_type == "payoff":
            initial = self.initial_amount if self.initial_amount is not None else self.current_amount
            if initial <= 0:
                return 0.0
            return float((initial - self.current_amount) / initial * _HUNDRED)

        if self.target_amount <= 0:
            return 0.0
        return float(self.current_amount / self.target_amount * _HUNDRED)


@dataclass
class Budget:
    """A monthly budget with its spend for the current period pre-computed."""

    budget_id: int
    user_id: int
    name: str
    budget_amount: Decimal
    spent: Decimal = Decimal("0")
    account_ids: list[int] = field(default_factory=list)

    @property
    def percent_used(self) -> float:
        if self.budget_amount <= 0:
            return 0.0
        return float(self.spent / self.budget_amount * _HUNDRED)


def budget_period(on: date) -> str:
    """Budget period key for ``on`` (calendar month, ``YYYY-MM``)."""
    return f"{on.year:04d}-{on.month:02d}"


def _add_months(anchor: date, months: int) -> date:
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class Bill:
    """A recurring (or one-off) bill anchored on its first due date."""

    bill_id: int
    user_id: int
    name: str
    amount: Decimal
    due_date: date
    frequency: str = "monthly"

    def next_due_date(self, today: date) -> date | None:
        """First occurrence on or after ``today``.

        Returns None for a one-off bill whose date has passed.
        """
        if self.due_date >= today:
            return self.due_date

        if self.frequency in ("weekly", "biweekly"):
            step = 7 if self.frequency == "weekly" else 14
            periods = -(-(today - self.due_date).days // step)
            return self.due_date + timedelta(days=periods * step)

        months = {"monthly": 1, "quarterly": 3, "yearly": 12}.get(self.frequency)
        if months is None:
            return None

        elapsed = (today.year - self.due_date.year) * 12 + today.month - self.due_date.month
        n = max(elapsed // months, 0)
        candidate = _add_months(self.due_date, n * months)
        while candidate < today:
            n += 1
            candidate = _add_months(self.due_date, n * months)
        return candidate


@dataclass
class Transaction:
    transaction_id: int
    user_id: int
    account_id: int
    amount: Decimal
    merchant_name: str | None = None
    description: str | None = None
    posted_at: datetime | None = None
