"""Notification dispatcher: fans a notification out to its delivery channels.

For each notification the dispatcher resolves the user's preferences and
decides, per channel, "ready now" or "not yet":

- email/SMS inside the user's quiet hours are deferred (the delivery row
  stays ``pending`` for ``deliver_pending``),
- email/SMS over the user's hourly or daily limit are skipped for now and
  logged,
- in-app is always attempted.

Ready channels run concurrently and settle independently: one channel's
failure never cancels another's attempt.

Pattern: Orchestrator (delegates to channel adapters).
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from src.alerts.schemas import Notification
from src.config.settings import Settings, get_settings
from src.notifications.channels import (
    ChannelAdapter,
    EmailChannel,
    InAppChannel,
    SmsChannel,
)
from src.notifications.circuit_breaker import CircuitBreaker
from src.notifications.config import NotificationConfig
from src.notifications.errors import ProviderClientError
from src.notifications.ledger import DeliveryLedger
from src.notifications.preferences import PreferenceRepository
from src.notifications.providers import EmailProvider, InAppPusher, SmsProvider
from src.notifications.repository import NotificationRepository
from src.notifications.schemas import ChannelOutcome, Delivery, DeliveryPreferences
from src.storage.database import Database

logger = logging.getLogger(__name__)

# Statuses the dispatcher may (re)attempt
_DISPATCHABLE = frozenset({"pending", "retrying"})


class NotificationDispatcher:
    """Delivers notifications across channels according to user preferences."""

    def __init__(
        self,
        ledger: DeliveryLedger,
        preferences: PreferenceRepository,
        channels: dict[str, ChannelAdapter],
        notifications: NotificationRepository | None = None,
        config: NotificationConfig | None = None,
        shutdown: asyncio.Event | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ledger = ledger
        self._preferences = preferences
        self._channels = channels
        self._notifications = notifications
        self._config = config or NotificationConfig()
        self._shutdown = shutdown or asyncio.Event()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def channels(self) -> dict[str, ChannelAdapter]:
        """Channel adapters by name (for inspection/testing)."""
        return self._channels

    def breaker_snapshots(self) -> list[dict[str, Any]]:
        """Circuit breaker state of every provider-backed channel."""
        return [
            ch.breaker.snapshot()
            for ch in self._channels.values()
            if hasattr(ch, "breaker")
        ]

    def request_shutdown(self) -> None:
        """Stop starting new attempts; in-flight attempts finish."""
        self._shutdown.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    async def deliver(
        self,
        notification: Notification,
        deliveries: list[Delivery] | None = None,
    ) -> dict[str, ChannelOutcome]:
        """Deliver ``notification`` on every channel that is ready now.

        Args:
            notification: The persisted notification.
            deliveries: Its delivery rows; loaded from the ledger if omitted.

        Returns:
            Per-channel outcome; a live row outranks a terminal one on the
            same channel.
        """
        if deliveries is None:
            deliveries = await self._ledger.get_for_notification(notification.notification_id)

        prefs = await self._preferences.get(notification.user_id)
        now = self._clock()
        in_quiet_hours = prefs.quiet_hours is not None and prefs.quiet_hours.contains(now)

        outcomes: dict[str, ChannelOutcome] = {}
        ready: list[tuple[ChannelAdapter, Delivery]] = []

        for delivery in deliveries:
            channel = delivery.channel
            if delivery.status not in _DISPATCHABLE:
                # A replayed row on the same channel reports over this one
                outcomes.setdefault(channel, ChannelOutcome(
                    channel, "skipped", delivery.attempts, error=f"already {delivery.status}",
                ))
                continue

            adapter = self._channels.get(channel)
            if adapter is None:
                logger.warning(
                    "No %s channel configured; delivery %s left pending",
                    channel, delivery.delivery_id,
                )
                outcomes[channel] = ChannelOutcome(
                    channel, "skipped", delivery.attempts, error="channel not configured",
                )
                continue

            if channel != "in_app":
                if in_quiet_hours:
                    logger.info(
                        "Deferring %s delivery %s for user %s until %s (quiet hours)",
                        channel, delivery.delivery_id, notification.user_id,
                        prefs.quiet_hours.window_end(now).isoformat(),
                    )
                    outcomes[channel] = ChannelOutcome(
                        channel, "deferred", delivery.attempts,
                    )
                    continue

                limit_hit = await self._rate_limit_exceeded(prefs, channel, now)
                if limit_hit:
                    logger.info(
                        "Skipping %s delivery %s for user %s: %s rate limit reached",
                        channel, delivery.delivery_id, notification.user_id, limit_hit,
                    )
                    outcomes[channel] = ChannelOutcome(
                        channel, "rate_limited", delivery.attempts, error=f"{limit_hit} limit",
                    )
                    continue

            ready.append((adapter, delivery))

        results = await asyncio.gather(
            *(adapter.send(notification, delivery) for adapter, delivery in ready),
            return_exceptions=True,
        )

        for (adapter, delivery), result in zip(ready, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Unexpected error delivering %s on %s: %s",
                    notification.notification_id, adapter.name, result,
                )
                outcomes[adapter.name] = ChannelOutcome(
                    adapter.name, "failed", delivery.attempts, error=str(result),
                )
            else:
                outcomes[adapter.name] = result

        self._record_delivery(notification, outcomes)
        return outcomes

    async def deliver_batch(
        self,
        notifications: list[Notification],
    ) -> dict[str, dict[str, ChannelOutcome]]:
        """Deliver several notifications, isolating failures per notification."""
        results: dict[str, dict[str, ChannelOutcome]] = {}
        for notification in notifications:
            if self.shutting_down:
                break
            try:
                results[notification.notification_id] = await self.deliver(notification)
            except Exception as e:
                logger.error(
                    "Unexpected error dispatching notification %s: %s",
                    notification.notification_id, e,
                )
        return results

    async def deliver_pending(self, limit: int | None = None) -> dict[str, int]:
        """Re-drive deferred, rate-limited and interrupted deliveries.

        Returns:
            Count of channel outcomes by status.
        """
        if self._notifications is None:
            raise RuntimeError("deliver_pending requires a NotificationRepository")

        pending = await self._ledger.get_pending(limit or self._config.pending_batch_size)
        if not pending:
            return {}

        by_notification: dict[str, list[Delivery]] = defaultdict(list)
        for delivery in pending:
            by_notification[delivery.notification_id].append(delivery)

        notifications = await self._notifications.get_many(list(by_notification))
        summary: dict[str, int] = defaultdict(int)

        for notification_id, deliveries in by_notification.items():
            if self.shutting_down:
                logger.info("Shutdown requested; stopping pending re-drive")
                break
            notification = notifications.get(notification_id)
            if notification is None:
                logger.warning(
                    "Pending deliveries reference missing notification %s",
                    notification_id,
                )
                continue
            try:
                outcomes = await self.deliver(notification, deliveries)
            except Exception as e:
                logger.error(
                    "Unexpected error re-driving notification %s: %s",
                    notification_id, e,
                )
                continue
            for outcome in outcomes.values():
                summary[outcome.status] += 1

        logger.info(
            "Re-drove %d pending deliveries across %d notifications: %s",
            len(pending), len(by_notification), dict(summary),
        )
        return dict(summary)

    async def _rate_limit_exceeded(
        self,
        prefs: DeliveryPreferences,
        channel: str,
        now: datetime,
    ) -> str | None:
        """Name of the exhausted window ("hourly"/"daily"), or None."""
        if prefs.max_per_hour > 0:
            sent = await self._ledger.count_sent_since(
                prefs.user_id, channel, now - timedelta(hours=1),
            )
            if sent >= prefs.max_per_hour:
                return "hourly"
        if prefs.max_per_day > 0:
            sent = await self._ledger.count_sent_since(
                prefs.user_id, channel, now - timedelta(days=1),
            )
            if sent >= prefs.max_per_day:
                return "daily"
        return None

    def _record_delivery(
        self,
        notification: Notification,
        outcomes: dict[str, ChannelOutcome],
    ) -> None:
        """Log delivery results."""
        attempted = {
            name: o for name, o in outcomes.items()
            if o.status in ("sent", "failed", "bounced", "retrying")
        }
        successes = [name for name, o in attempted.items() if o.ok]
        failures = [name for name, o in attempted.items() if not o.ok]

        if failures and not successes:
            logger.error(
                "Notification %s failed ALL attempted channels: %s",
                notification.notification_id, failures,
            )
        elif failures:
            logger.warning(
                "Notification %s partial delivery: ok=%s failed=%s",
                notification.notification_id, successes, failures,
            )
        else:
            logger.debug(
                "Notification %s delivered: %s",
                notification.notification_id, successes,
            )


def build_dispatcher(
    database: Database,
    redis_client: Any | None = None,
    settings: Settings | None = None,
    config: NotificationConfig | None = None,
) -> NotificationDispatcher:
    """Wire providers, one circuit breaker per provider, and channels.

    Email and SMS channels exist only when their provider is configured.
    """
    settings = settings or get_settings()
    config = config or NotificationConfig()
    shutdown = asyncio.Event()
    ledger = DeliveryLedger(database)

    def breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name=name,
            failure_threshold=config.circuit_breaker_threshold,
            recovery_timeout=config.circuit_breaker_recovery_seconds,
            success_threshold=config.circuit_breaker_success_threshold,
            ignored_exceptions=(ProviderClientError,),
        )

    channels: dict[str, ChannelAdapter] = {
        "in_app": InAppChannel(
            InAppPusher(redis_client, config.in_app_channel_prefix),
            ledger,
            timeout=config.timeout_for("in_app"),
        ),
    }

    if settings.email_configured:
        channels["email"] = EmailChannel(
            EmailProvider(
                settings.email_api_url,
                settings.email_api_key,
                settings.email_from_address,
                timeout=config.timeout_for("email"),
            ),
            breaker("email"),
            ledger,
            config.retry_policy("email"),
            timeout=config.timeout_for("email"),
            shutdown=shutdown,
        )
    else:
        logger.info("Email provider not configured; email deliveries stay pending")

    if settings.sms_configured:
        channels["sms"] = SmsChannel(
            SmsProvider(
                settings.sms_api_url,
                settings.sms_api_key,
                settings.sms_from_number,
                timeout=config.timeout_for("sms"),
            ),
            breaker("sms"),
            ledger,
            config.retry_policy("sms"),
            timeout=config.timeout_for("sms"),
            shutdown=shutdown,
        )
    else:
        logger.info("SMS provider not configured; SMS deliveries stay pending")

    return NotificationDispatcher(
        ledger=ledger,
        preferences=PreferenceRepository(database, config),
        channels=channels,
        notifications=NotificationRepository(database),
        config=config,
        shutdown=shutdown,
    )
