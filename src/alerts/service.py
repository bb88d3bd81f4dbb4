"""Alert evaluation service: evaluate, deduplicate, emit, hand off.

The orchestrator of an evaluation run. For one user it loads the active
alerts relevant to the trigger mode, batch-loads every entity they
reference (one query per entity type), and evaluates alerts in fixed-size
chunks. Each firing alert that survives deduplication is emitted in its
own transaction (notification + alert state + delivery rows).

Failure isolation:

- an optimistic-lock conflict reloads the alert and re-runs deduplication
  against the winner's state, a bounded number of times,
- malformed conditions, exhausted conflicts and unexpected errors skip only
  the alert concerned,
- infrastructure errors (database or network unreachable) let the current
  chunk settle and then abort the rest of the run,
- a shutdown request stops new chunks from starting; in-flight alerts
  finish so each emit stays atomic.

Evaluation logic is delegated to stateless evaluators in ``evaluators.py``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.alerts.conditions import parse_conditions
from src.alerts.config import AlertConfig
from src.alerts.dedup import DeduplicationEngine
from src.alerts.entities import Transaction
from src.alerts.errors import INFRASTRUCTURE_ERRORS, AlertValidationError, StaleAlertError
from src.alerts.evaluators import AlertEvaluator, build_evaluators
from src.alerts.repository import AlertRepository
from src.alerts.schemas import (
    TRIGGER_MODE_TYPES,
    Alert,
    EvaluationContext,
    Notification,
    TriggerResult,
)
from src.notifications.preferences import PreferenceRepository
from src.notifications.schemas import Delivery, DeliveryPreferences
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

# Conditions field holding the referenced entity id, per alert type
_ENTITY_FIELDS: dict[str, tuple[str, str]] = {
    "account_threshold": ("accounts", "account_id"),
    "goal": ("goals", "goal_id"),
    "spending_target": ("budgets", "budget_id"),
    "upcoming_bill": ("bills", "bill_id"),
}


@dataclass
class EvaluationPage:
    """Result of evaluating one page of users."""

    notifications: list[Notification] = field(default_factory=list)
    users_processed: int = 0
    next_cursor: int | None = None


class AlertEvaluationService:
    """Orchestrator for alert evaluation, deduplication and emit."""

    def __init__(
        self,
        config: AlertConfig,
        alert_repo: AlertRepository,
        preferences: PreferenceRepository,
        redis_client: Any | None = None,
        dispatcher: Any | None = None,
        evaluators: dict[str, AlertEvaluator] | None = None,
        dedup: DeduplicationEngine | None = None,
    ) -> None:
        self._config = config
        self._alert_repo = alert_repo
        self._preferences = preferences
        self._dispatcher = dispatcher
        self._evaluators = evaluators or build_evaluators(config)
        self._dedup = dedup or DeduplicationEngine(config, alert_repo, redis_client)
        self._shutdown = asyncio.Event()

    def request_shutdown(self) -> None:
        """Stop starting new evaluations; in-flight alerts finish."""
        self._shutdown.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    async def evaluate_user(
        self,
        context: EvaluationContext,
        alert_types: frozenset[str] | set[str] | None = None,
    ) -> list[Notification]:
        """Evaluate one user's alerts for ``context.trigger_mode``.

        Args:
            context: Run inputs; entity maps are filled in here.
            alert_types: Further restrict the types the trigger mode covers.

        Returns:
            Notifications created (and committed) by this run.

        Raises:
            Any infrastructure error, after the in-flight chunk settles.
        """
        types = context.alert_types
        if alert_types is not None:
            types = types & frozenset(alert_types)
        if not types:
            return []

        alerts = await self._alert_repo.get_active_alerts(context.user_id, types)
        if not alerts:
            return []

        prefs = await self._preferences.get(context.user_id)
        context.merchant_alert_mode = prefs.merchant_alert_mode
        await self._load_context(context, alerts)

        notifications: list[Notification] = []
        chunk_size = self._config.evaluation_concurrency

        for start in range(0, len(alerts), chunk_size):
            if self.shutting_down:
                logger.info(
                    "Shutdown requested; %d alerts of user %s not evaluated",
                    len(alerts) - start, context.user_id,
                )
                break

            chunk = alerts[start:start + chunk_size]
            results = await asyncio.gather(
                *(self._evaluate_alert(alert, context, prefs) for alert in chunk),
                return_exceptions=True,
            )

            infrastructure_error: BaseException | None = None
            for alert, result in zip(chunk, results):
                if isinstance(result, INFRASTRUCTURE_ERRORS):
                    logger.error(
                        "Infrastructure failure on alert %s (%s): %s",
                        alert.alert_id, alert.alert_type, result,
                    )
                    infrastructure_error = infrastructure_error or result
                elif isinstance(result, Exception):
                    logger.error("Alert %s failed after emit: %s", alert.alert_id, result)
                elif isinstance(result, BaseException):
                    raise result
                elif result is not None:
                    notifications.append(result)

            if infrastructure_error is not None:
                raise infrastructure_error

        if notifications:
            logger.info(
                "Run %s: user %s produced %d notifications from %d alerts",
                context.run_id, context.user_id, len(notifications), len(alerts),
            )
            await self._hand_off(notifications)
        return notifications

    async def evaluate_transaction(
        self,
        transaction: Transaction | int,
        now: datetime | None = None,
    ) -> list[Notification]:
        """Realtime entry point for a newly posted transaction.

        Only ``merchant_name`` and ``transaction_limit`` alerts are evaluated.
        """
        if isinstance(transaction, Transaction):
            txn: Transaction | None = transaction
        else:
            txn = await self._alert_repo.get_transaction(transaction)
        if txn is None:
            logger.warning("Transaction %s not found; nothing to evaluate", transaction)
            return []

        context = EvaluationContext(
            user_id=txn.user_id,
            trigger_mode="realtime",
            transaction=txn,
            transaction_id=txn.transaction_id,
            now=now or datetime.now(timezone.utc),
        )
        return await self.evaluate_user(context)

    async def evaluate_page(
        self,
        trigger_mode: str = "scheduled",
        cursor: int | None = None,
        now: datetime | None = None,
    ) -> EvaluationPage:
        """Evaluate one page of users with active alerts for ``trigger_mode``.

        Args:
            trigger_mode: ``scheduled`` or ``daily`` (batch modes).
            cursor: Last user id of the previous page.
            now: Evaluation time shared by the whole page.

        Returns:
            The page result; ``next_cursor`` is None after the last page.
        """
        page_size = self._config.user_page_size
        user_ids = await self._alert_repo.get_user_ids_with_active_alerts(
            after_user_id=cursor,
            limit=page_size,
            alert_types=TRIGGER_MODE_TYPES[trigger_mode],
        )
        page = EvaluationPage()
        if not user_ids:
            return page

        run_now = now or datetime.now(timezone.utc)
        concurrency = self._config.user_concurrency

        for start in range(0, len(user_ids), concurrency):
            if self.shutting_down:
                page.next_cursor = user_ids[start - 1] if start else cursor
                return page

            batch = user_ids[start:start + concurrency]
            results = await asyncio.gather(
                *(
                    self.evaluate_user(
                        EvaluationContext(user_id=uid, trigger_mode=trigger_mode, now=run_now)
                    )
                    for uid in batch
                ),
                return_exceptions=True,
            )
            for uid, result in zip(batch, results):
                if isinstance(result, INFRASTRUCTURE_ERRORS):
                    raise result
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.error("Evaluation of user %s failed: %s", uid, result)
                    continue
                page.notifications.extend(result)
            page.users_processed += len(batch)

        if len(user_ids) == page_size:
            page.next_cursor = user_ids[-1]
        return page

    async def evaluate_all(
        self,
        trigger_mode: str = "scheduled",
        now: datetime | None = None,
    ) -> int:
        """Walk every page for a batch trigger; returns notifications created."""
        run_now = now or datetime.now(timezone.utc)
        cursor: int | None = None
        total = 0
        users = 0
        while True:
            page = await self.evaluate_page(trigger_mode, cursor, run_now)
            total += len(page.notifications)
            users += page.users_processed
            if page.next_cursor is None or self.shutting_down:
                break
            cursor = page.next_cursor

        logger.info(
            "%s run complete: %d users, %d notifications",
            trigger_mode, users, total,
        )
        return total

    async def _load_context(self, context: EvaluationContext, alerts: list[Alert]) -> None:
        """Batch-load every entity the alerts reference, one query per type."""
        wanted: dict[str, set[int]] = {"accounts": set(), "goals": set(), "budgets": set(), "bills": set()}
        for alert in alerts:
            target = _ENTITY_FIELDS.get(alert.alert_type)
            if target is None:
                continue
            try:
                cond = parse_conditions(alert.alert_type, alert.conditions)
            except AlertValidationError:
                # Reported when the alert itself is evaluated
                continue
            entity_map, id_field = target
            wanted[entity_map].add(getattr(cond, id_field))

        missing = {
            name: sorted(ids - set(getattr(context, name)))
            for name, ids in wanted.items()
        }
        if missing["accounts"]:
            context.accounts.update(
                await self._alert_repo.get_accounts(context.user_id, missing["accounts"])
            )
        if missing["goals"]:
            context.goals.update(
                await self._alert_repo.get_goals(context.user_id, missing["goals"])
            )
        if missing["budgets"]:
            period_start = context.now.date().replace(day=1)
            context.budgets.update(
                await self._alert_repo.get_budgets(context.user_id, missing["budgets"], period_start)
            )
        if missing["bills"]:
            context.bills.update(
                await self._alert_repo.get_bills(context.user_id, missing["bills"])
            )

        if context.transaction is None and context.transaction_id is not None:
            context.transaction = await self._alert_repo.get_transaction(context.transaction_id)
            if context.transaction is None:
                logger.warning(
                    "Transaction %s missing; realtime alerts will not fire",
                    context.transaction_id,
                )

    async def _evaluate_alert(
        self,
        alert: Alert,
        context: EvaluationContext,
        prefs: DeliveryPreferences,
    ) -> Notification | None:
        """Evaluate, deduplicate and emit one alert.

        Returns:
            The committed notification, or None if nothing was emitted.
        """
        metrics = get_metrics()
        evaluator = self._evaluators.get(alert.alert_type)
        if evaluator is None:
            logger.warning("No evaluator for alert %s type %s", alert.alert_id, alert.alert_type)
            metrics.record_evaluation(alert.alert_type, "skipped")
            return None

        retries = self._config.stale_emit_retries
        try:
            for attempt in range(retries + 1):
                result = evaluator.evaluate(alert, context)
                if not result.fires:
                    metrics.record_evaluation(alert.alert_type, "quiet")
                    return None

                if not await self._dedup.should_emit(alert, result, context):
                    metrics.record_evaluation(alert.alert_type, "suppressed")
                    return None

                notification = self._build_notification(alert, result, context)
                deliveries = self._build_deliveries(alert, notification, prefs)
                try:
                    await self._alert_repo.emit(alert, notification, deliveries)
                    break
                except StaleAlertError as e:
                    if attempt == retries:
                        raise
                    # Another run emitted first; dedup again against its state
                    logger.info("Re-evaluating alert %s: %s", alert.alert_id, e)
                    fresh = await self._alert_repo.get_by_id(alert.alert_id)
                    if fresh is None or not fresh.active:
                        return None
                    alert = fresh
        except AlertValidationError as e:
            logger.warning("Skipping alert %s: %s", alert.alert_id, e)
            metrics.record_evaluation_error(alert.alert_type, "validation")
            return None
        except StaleAlertError as e:
            logger.info("Skipping alert %s: %s", alert.alert_id, e)
            metrics.record_evaluation_error(alert.alert_type, "stale")
            return None
        except INFRASTRUCTURE_ERRORS:
            raise
        except Exception as e:
            logger.error(
                "Alert %s (%s) evaluation failed: %s",
                alert.alert_id, alert.alert_type, e,
            )
            metrics.record_evaluation_error(alert.alert_type, "unexpected")
            return None

        await self._dedup.remember(alert, result)
        metrics.record_evaluation(alert.alert_type, "fired")
        metrics.record_notification(alert.alert_type)
        return notification

    def _build_notification(
        self,
        alert: Alert,
        result: TriggerResult,
        context: EvaluationContext,
    ) -> Notification:
        return Notification(
            user_id=alert.user_id,
            alert_id=alert.alert_id,
            title=result.title or alert.name,
            message=result.message,
            metadata={**result.metadata, "alert_type": alert.alert_type},
            created_at=context.now,
        )

    def _build_deliveries(
        self,
        alert: Alert,
        notification: Notification,
        prefs: DeliveryPreferences,
    ) -> list[Delivery]:
        """One pending delivery per channel enabled on the alert and by the user."""
        wanted = {"in_app": True, "email": alert.email_enabled, "sms": alert.sms_enabled}
        deliveries: list[Delivery] = []
        for channel, enabled in wanted.items():
            if not enabled:
                continue
            destination = prefs.destination_for(channel)
            if destination is None:
                logger.debug(
                    "Alert %s wants %s but user %s has no enabled destination",
                    alert.alert_id, channel, alert.user_id,
                )
                continue
            deliveries.append(
                Delivery(
                    notification_id=notification.notification_id,
                    channel=channel,
                    destination=destination,
                    user_id=alert.user_id,
                    created_at=notification.created_at,
                )
            )
        return deliveries

    async def _hand_off(self, notifications: list[Notification]) -> None:
        """Pass committed notifications to the dispatcher (never raises)."""
        if self._dispatcher is None:
            return
        try:
            await self._dispatcher.deliver_batch(notifications)
        except Exception as e:
            logger.error("Notification dispatch failed: %s", e)
