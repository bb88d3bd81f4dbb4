"""Deduplication of fired alerts before a notification is created.

Two layers:

1. A persisted per-type rule driven by ``Alert.last_triggered_at`` and the
   typed evaluation state (cooldowns, milestones already sent, last bill due
   date). When it lets a trigger through, the engine updates that state on
   the in-memory alert; the orchestrator persists it in the same transaction
   as the notification.
2. A volatile Redis fingerprint cache keyed by alert id + hash of the
   trigger metadata. It is checked with EXISTS before emitting and only
   written after the notification commits, so losing Redis (or a failed
   commit) can cause an extra notification but never a missed one.
"""

import logging
from datetime import date, timedelta
from typing import Any, Protocol

from src.alerts.config import AlertConfig
from src.alerts.schemas import Alert, EvaluationContext, TriggerResult
from src.alerts.state import (
    AccountThresholdState,
    GoalState,
    SpendingTargetState,
    UpcomingBillState,
    load_state,
)
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class NotificationHistory(Protocol):
    async def has_notification_since(self, alert_id: int, since: Any) -> bool: ...


class DeduplicationEngine:
    """Decides whether a fired trigger becomes a notification."""

    def __init__(
        self,
        config: AlertConfig,
        history: NotificationHistory,
        redis_client: Any | None = None,
    ) -> None:
        self._config = config
        self._history = history
        self._redis = redis_client

    def _fingerprint_key(self, alert: Alert, result: TriggerResult) -> str:
        return f"{self._config.fingerprint_key_prefix}:{alert.alert_id}:{result.fingerprint()}"

    async def should_emit(
        self,
        alert: Alert,
        result: TriggerResult,
        context: EvaluationContext,
    ) -> bool:
        """Apply both layers; on True, ``alert`` carries its updated state.

        Args:
            alert: Alert that fired (mutated when the result is emitted).
            result: Evaluator output with ``fires=True``.
            context: Current run, supplies ``now`` and user preferences.

        Returns:
            True if a notification should be created.
        """
        reason = await self.suppression_reason(alert, result, context)
        if reason is not None:
            logger.debug(
                "Alert %s (%s) suppressed: %s",
                alert.alert_id, alert.alert_type, reason,
            )
            get_metrics().record_suppressed(alert.alert_type, reason)
            return False

        self._apply_emit(alert, result, context)
        return True

    async def suppression_reason(
        self,
        alert: Alert,
        result: TriggerResult,
        context: EvaluationContext,
    ) -> str | None:
        """Why ``result`` should be suppressed, or None to emit it."""
        reason = await self._persisted_rule(alert, result, context)
        if reason is not None:
            return reason
        if await self._seen_recently(alert, result):
            return "fingerprint"
        return None

    async def _persisted_rule(
        self,
        alert: Alert,
        result: TriggerResult,
        context: EvaluationContext,
    ) -> str | None:
        kind = alert.alert_type

        if kind == "account_threshold":
            state: AccountThresholdState = load_state(kind, alert.evaluation_metadata)
            direction = result.metadata.get("direction")
            same_direction = state.last_direction in (None, direction)
            cooldown = timedelta(hours=self._config.threshold_cooldown_hours)
            if (
                alert.last_triggered_at is not None
                and same_direction
                and context.now - alert.last_triggered_at < cooldown
            ):
                return "cooldown"
            return None

        if kind == "goal":
            goal_state: GoalState = load_state(kind, alert.evaluation_metadata)
            milestone = result.metadata.get("milestone")
            if milestone is None or milestone <= goal_state.highest_notified:
                return "milestone_sent"
            return None

        if kind == "spending_target":
            spend_state: SpendingTargetState = load_state(kind, alert.evaluation_metadata)
            threshold = result.metadata.get("threshold")
            sent = spend_state.sent_in(result.metadata.get("period", ""))
            if threshold is None or threshold <= max(sent, default=0):
                return "threshold_sent"
            return None

        if kind == "upcoming_bill":
            bill_state: UpcomingBillState = load_state(kind, alert.evaluation_metadata)
            due = result.metadata.get("due_date")
            if (
                bill_state.last_due_date_notified is not None
                and bill_state.last_due_date_notified.isoformat() == due
            ):
                return "due_date_sent"
            return None

        if kind == "merchant_name":
            mode = context.merchant_alert_mode
            if mode == "daily_digest":
                return "digest_mode"
            if mode == "first_of_day":
                start_of_day = context.now.replace(hour=0, minute=0, second=0, microsecond=0)
                if await self._history.has_notification_since(alert.alert_id, start_of_day):
                    return "already_today"
            return None

        # transaction_limit: never suppressed by history
        return None

    async def _seen_recently(self, alert: Alert, result: TriggerResult) -> bool:
        """EXISTS check against the fingerprint cache.

        Returns False if Redis is unavailable.
        """
        if self._redis is None:
            return False

        try:
            return bool(await self._redis.exists(self._fingerprint_key(alert, result)))
        except Exception as e:
            logger.warning("Fingerprint lookup failed, allowing alert: %s", e)
            return False

    async def remember(self, alert: Alert, result: TriggerResult) -> None:
        """Record the fingerprint of an emitted trigger (after commit)."""
        if self._redis is None:
            return

        try:
            await self._redis.set(
                self._fingerprint_key(alert, result),
                "1",
                ex=self._config.fingerprint_ttl_seconds,
            )
        except Exception as e:
            logger.warning("Fingerprint write failed for alert %s: %s", alert.alert_id, e)

    def _apply_emit(
        self,
        alert: Alert,
        result: TriggerResult,
        context: EvaluationContext,
    ) -> None:
        """Update the alert's state to reflect the emitted notification."""
        kind = alert.alert_type
        state = load_state(kind, alert.evaluation_metadata)

        if isinstance(state, AccountThresholdState):
            state.last_direction = result.metadata.get("direction")
        elif isinstance(state, GoalState):
            state.record(int(result.metadata["milestone"]))
        elif isinstance(state, SpendingTargetState):
            state.record(result.metadata["period"], int(result.metadata["threshold"]))
        elif isinstance(state, UpcomingBillState):
            state.last_due_date_notified = date.fromisoformat(
                result.metadata["due_date"]
            )

        alert.evaluation_metadata = state.to_dict()
        alert.last_triggered_at = context.now
