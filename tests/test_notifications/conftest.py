"""Shared fixtures for notification delivery tests."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.alerts.schemas import Notification
from src.notifications.backoff import RetryPolicy
from src.notifications.ledger import DeliveryLedger
from src.notifications.schemas import Delivery


@pytest.fixture
def notification():
    return Notification(
        notification_id="n-1",
        user_id=7,
        alert_id=1,
        title="Low balance",
        message="Checking balance $80.00 is below $100.00",
        metadata={"alert_type": "account_threshold"},
        created_at=datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def delivery_factory(notification):
    def make(channel="email", destination="user@example.com", **kwargs):
        return Delivery(
            notification_id=notification.notification_id,
            channel=channel,
            destination=destination,
            user_id=notification.user_id,
            **kwargs,
        )
    return make


@pytest.fixture
def mock_ledger():
    return AsyncMock(spec=DeliveryLedger)


@pytest.fixture
def fast_policy():
    """Three attempts with no real sleeping."""
    return RetryPolicy(max_attempts=3, initial_delay=0.0, multiplier=2.0, max_delay=0.0)
