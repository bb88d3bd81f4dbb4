"""Shared fixtures for alert tests."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from src.alerts.config import AlertConfig
from src.alerts.entities import Account, Bill, Budget, Goal, Transaction
from src.alerts.schemas import Alert, EvaluationContext


def make_alert(alert_type: str, conditions: dict, alert_id: int = 1, **kwargs) -> Alert:
    defaults = {
        "user_id": 7,
        "name": f"{alert_type} alert",
    }
    defaults.update(kwargs)
    return Alert(alert_id=alert_id, alert_type=alert_type, conditions=conditions, **defaults)


@pytest.fixture
def alert_factory():
    return make_alert


@pytest.fixture
def config():
    return AlertConfig()


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def account():
    return Account(account_id=10, user_id=7, name="Checking", balance=Decimal("80.00"))


@pytest.fixture
def savings_goal():
    return Goal(
        goal_id=20,
        user_id=7,
        name="Emergency fund",
        goal_type="savings",
        target_amount=Decimal("1000"),
        current_amount=Decimal("100"),
    )


@pytest.fixture
def budget():
    return Budget(
        budget_id=30,
        user_id=7,
        name="Groceries",
        budget_amount=Decimal("500"),
        spent=Decimal("100"),
    )


@pytest.fixture
def bill():
    return Bill(
        bill_id=40,
        user_id=7,
        name="Rent",
        amount=Decimal("1200"),
        due_date=date(2026, 1, 18),
        frequency="monthly",
    )


@pytest.fixture
def transaction():
    return Transaction(
        transaction_id=500,
        user_id=7,
        account_id=10,
        amount=Decimal("-250.00"),
        merchant_name="Whole Foods Market",
        description="Weekly shop",
    )


@pytest.fixture
def context(now, account, savings_goal, budget, bill):
    return EvaluationContext(
        user_id=7,
        trigger_mode="manual",
        accounts={account.account_id: account},
        goals={savings_goal.goal_id: savings_goal},
        budgets={budget.budget_id: budget},
        bills={bill.bill_id: bill},
        now=now,
    )
