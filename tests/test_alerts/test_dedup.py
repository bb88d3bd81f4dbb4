"""Tests for DeduplicationEngine with mocked history and Redis."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.alerts.dedup import DeduplicationEngine
from src.alerts.schemas import TriggerResult


@pytest.fixture
def history():
    h = AsyncMock()
    h.has_notification_since.return_value = False
    return h


@pytest.fixture
def mock_redis():
    r = AsyncMock()
    r.exists.return_value = 0
    r.set.return_value = True
    return r


@pytest.fixture
def engine(config, history, mock_redis):
    return DeduplicationEngine(config, history, mock_redis)


def _fired(alert_id=1, **metadata):
    return TriggerResult(alert_id=alert_id, fires=True, title="t", message="m", metadata=metadata)


class TestAccountThresholdCooldown:
    @pytest.mark.asyncio
    async def test_first_firing_emits_and_records_state(self, engine, alert_factory, context):
        alert = alert_factory("account_threshold", {})
        assert await engine.should_emit(alert, _fired(direction="below"), context)
        assert alert.last_triggered_at == context.now
        assert alert.evaluation_metadata["last_direction"] == "below"

    @pytest.mark.asyncio
    async def test_within_cooldown_suppressed(self, engine, alert_factory, context):
        alert = alert_factory(
            "account_threshold", {},
            last_triggered_at=context.now - timedelta(hours=5),
            evaluation_metadata={"version": 1, "last_direction": "below"},
        )
        reason = await engine.suppression_reason(alert, _fired(direction="below"), context)
        assert reason == "cooldown"

    @pytest.mark.asyncio
    async def test_after_cooldown_emits(self, engine, alert_factory, context):
        alert = alert_factory(
            "account_threshold", {},
            last_triggered_at=context.now - timedelta(hours=6, minutes=1),
            evaluation_metadata={"version": 1, "last_direction": "below"},
        )
        assert await engine.should_emit(alert, _fired(direction="below"), context)

    @pytest.mark.asyncio
    async def test_direction_change_bypasses_cooldown(self, engine, alert_factory, context):
        alert = alert_factory(
            "account_threshold", {},
            last_triggered_at=context.now - timedelta(minutes=10),
            evaluation_metadata={"version": 1, "last_direction": "below"},
        )
        assert await engine.should_emit(alert, _fired(direction="above"), context)


class TestMilestones:
    @pytest.mark.asyncio
    async def test_goal_milestone_recorded(self, engine, alert_factory, context):
        alert = alert_factory("goal", {})
        assert await engine.should_emit(alert, _fired(milestone=50), context)
        assert alert.evaluation_metadata["milestones_notified"] == [50]

    @pytest.mark.asyncio
    async def test_goal_milestone_already_sent(self, engine, alert_factory, context):
        alert = alert_factory(
            "goal", {}, evaluation_metadata={"version": 1, "milestones_notified": [50]},
        )
        assert await engine.suppression_reason(alert, _fired(milestone=50), context) == "milestone_sent"

    @pytest.mark.asyncio
    async def test_spending_threshold_period_reset(self, engine, alert_factory, context):
        alert = alert_factory(
            "spending_target", {},
            evaluation_metadata={"version": 1, "period": "2026-02", "thresholds_sent": [50, 80]},
        )
        assert await engine.should_emit(alert, _fired(threshold=50, period="2026-03"), context)
        assert alert.evaluation_metadata["period"] == "2026-03"
        assert alert.evaluation_metadata["thresholds_sent"] == [50]

    @pytest.mark.asyncio
    async def test_spending_threshold_sent_in_period(self, engine, alert_factory, context):
        alert = alert_factory(
            "spending_target", {},
            evaluation_metadata={"version": 1, "period": "2026-03", "thresholds_sent": [80]},
        )
        reason = await engine.suppression_reason(alert, _fired(threshold=80, period="2026-03"), context)
        assert reason == "threshold_sent"


class TestUpcomingBill:
    @pytest.mark.asyncio
    async def test_due_date_recorded(self, engine, alert_factory, context):
        alert = alert_factory("upcoming_bill", {})
        assert await engine.should_emit(alert, _fired(due_date="2026-03-18"), context)
        assert alert.evaluation_metadata["last_due_date_notified"] == "2026-03-18"

    @pytest.mark.asyncio
    async def test_same_due_date_suppressed(self, engine, alert_factory, context):
        alert = alert_factory(
            "upcoming_bill", {},
            evaluation_metadata={"version": 1, "last_due_date_notified": "2026-03-18"},
        )
        reason = await engine.suppression_reason(alert, _fired(due_date="2026-03-18"), context)
        assert reason == "due_date_sent"


class TestMerchantModes:
    @pytest.mark.asyncio
    async def test_immediate_never_checks_history(self, engine, history, alert_factory, context):
        alert = alert_factory("merchant_name", {})
        assert await engine.should_emit(alert, _fired(transaction_id=1), context)
        history.has_notification_since.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_of_day_suppresses_second(self, engine, history, alert_factory, context):
        context.merchant_alert_mode = "first_of_day"
        history.has_notification_since.return_value = True
        alert = alert_factory("merchant_name", {})
        assert await engine.suppression_reason(alert, _fired(transaction_id=2), context) == "already_today"

        since = history.has_notification_since.call_args.args[1]
        assert since == context.now.replace(hour=0, minute=0, second=0, microsecond=0)

    @pytest.mark.asyncio
    async def test_daily_digest_never_fires_realtime(self, engine, alert_factory, context):
        context.merchant_alert_mode = "daily_digest"
        alert = alert_factory("merchant_name", {})
        assert not await engine.should_emit(alert, _fired(transaction_id=3), context)


class TestTransactionLimit:
    @pytest.mark.asyncio
    async def test_ten_transactions_ten_emits(self, engine, mock_redis, alert_factory, context):
        alert = alert_factory("transaction_limit", {})
        emitted = 0
        for txn_id in range(10):
            result = _fired(transaction_id=txn_id, amount="900.00")
            if await engine.should_emit(alert, result, context):
                await engine.remember(alert, result)
                emitted += 1
        assert emitted == 10


class TestFingerprintCache:
    @pytest.mark.asyncio
    async def test_cached_fingerprint_suppresses(self, engine, mock_redis, alert_factory, context):
        mock_redis.exists.return_value = 1
        alert = alert_factory("transaction_limit", {})
        assert await engine.suppression_reason(alert, _fired(transaction_id=1), context) == "fingerprint"

    @pytest.mark.asyncio
    async def test_redis_failure_allows_emit(self, engine, mock_redis, alert_factory, context):
        mock_redis.exists.side_effect = ConnectionError("redis down")
        alert = alert_factory("transaction_limit", {})
        assert await engine.should_emit(alert, _fired(transaction_id=1), context)

    @pytest.mark.asyncio
    async def test_no_redis_allows_emit(self, config, history, alert_factory, context):
        engine = DeduplicationEngine(config, history, None)
        alert = alert_factory("transaction_limit", {})
        assert await engine.should_emit(alert, _fired(transaction_id=1), context)
        await engine.remember(alert, _fired(transaction_id=1))

    @pytest.mark.asyncio
    async def test_remember_sets_ttl(self, engine, mock_redis, config, alert_factory):
        alert = alert_factory("goal", {}, alert_id=9)
        result = _fired(alert_id=9, milestone=25)
        await engine.remember(alert, result)
        key = mock_redis.set.call_args.args[0]
        assert key == f"alert:fp:9:{result.fingerprint()}"
        assert mock_redis.set.call_args.kwargs["ex"] == config.fingerprint_ttl_seconds

    @pytest.mark.asyncio
    async def test_remember_swallows_redis_errors(self, engine, mock_redis, alert_factory):
        mock_redis.set.side_effect = ConnectionError("redis down")
        await engine.remember(alert_factory("goal", {}), _fired(milestone=25))

    def test_fingerprint_stable_across_key_order(self):
        a = TriggerResult(1, True, metadata={"a": 1, "b": 2})
        b = TriggerResult(1, True, metadata={"b": 2, "a": 1})
        assert a.fingerprint() == b.fingerprint()
