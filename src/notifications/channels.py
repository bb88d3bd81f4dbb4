"""Channel adapters that deliver a notification through one channel.

``RetryingChannel`` wraps a provider client with:

- a per-provider ``CircuitBreaker`` (shared across deliveries),
- a bounded per-call timeout,
- sequential retries with exponential backoff and jitter, where client
  errors are never retried and exhaustion dead-letters the delivery,
- a stable idempotency key per (notification, channel), identical on
  every attempt.

The backoff sleep waits on the shutdown event: once shutdown is requested
the current attempt finishes but no new attempt starts, and the delivery
stays ``retrying`` for the next ``deliver_pending`` run.

``InAppChannel`` is best effort: the notification row is already durable,
so a failed live push is recorded as ``sent``.

Pattern: Decorator (CircuitBreaker wraps the provider call).
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod

from src.alerts.schemas import Notification
from src.notifications.backoff import ExponentialBackoff, RetryPolicy
from src.notifications.circuit_breaker import CircuitBreaker
from src.notifications.errors import (
    CircuitOpenError,
    ProviderClientError,
    ProviderError,
    ProviderTimeoutError,
)
from src.notifications.ledger import DeliveryLedger
from src.notifications.providers import InAppPusher, ProviderClient
from src.notifications.schemas import ChannelOutcome, DeadLetter, Delivery
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class ChannelAdapter(ABC):
    """Abstract base for notification delivery channels."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Channel identifier (email, sms, in_app)."""

    @abstractmethod
    async def send(self, notification: Notification, delivery: Delivery) -> ChannelOutcome:
        """Deliver ``notification`` to ``delivery.destination``.

        Updates the delivery's ledger row as it goes and returns the final
        outcome of this call.
        """


class RetryingChannel(ChannelAdapter):
    """Provider-backed channel with retry, backoff and circuit breaking."""

    def __init__(
        self,
        provider: ProviderClient,
        breaker: CircuitBreaker,
        ledger: DeliveryLedger,
        policy: RetryPolicy,
        timeout: float = 10.0,
        shutdown: asyncio.Event | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._provider = provider
        self._breaker = breaker
        self._ledger = ledger
        self._policy = policy
        self._timeout = timeout
        self._shutdown = shutdown
        self._rng = rng

    @property
    def name(self) -> str:
        return self._provider.name

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def render(self, notification: Notification) -> tuple[str, str]:
        """Subject and body for the provider."""
        return notification.title, notification.message

    async def _call_provider(
        self,
        destination: str,
        subject: str,
        body: str,
        idempotency_key: str,
    ) -> str:
        try:
            return await asyncio.wait_for(
                self._provider.send(destination, subject, body, idempotency_key),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"{self.name} call exceeded {self._timeout:.1f}s"
            ) from e

    async def _backoff_sleep(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; returns True if shutdown cut it short."""
        if self._shutdown is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def send(self, notification: Notification, delivery: Delivery) -> ChannelOutcome:
        metrics = get_metrics()
        backoff = ExponentialBackoff.from_policy(self._policy, rng=self._rng)
        subject, body = self.render(notification)
        key = delivery.idempotency_key
        attempts = delivery.attempts

        while True:
            attempts += 1
            started = time.monotonic()
            try:
                reference = await self._breaker.call(
                    self._call_provider, delivery.destination, subject, body, key,
                )
            except ProviderClientError as e:
                metrics.record_delivery_attempt(self.name, "client_error")
                if e.bounced:
                    await self._ledger.mark_bounced(delivery, attempts, str(e))
                    status = "bounced"
                else:
                    await self._ledger.mark_failed(delivery, attempts, str(e))
                    status = "failed"
                logger.warning(
                    "Delivery %s (%s) rejected by provider: %s",
                    delivery.delivery_id, self.name, e,
                )
                return ChannelOutcome(self.name, status, attempts, error=str(e))
            except ProviderError as e:
                label = "circuit_open" if isinstance(e, CircuitOpenError) else "transient"
                metrics.record_delivery_attempt(
                    self.name, label,
                    latency=None if label == "circuit_open" else time.monotonic() - started,
                )

                if attempts >= self._policy.max_attempts:
                    await self._ledger.mark_exhausted(
                        delivery,
                        attempts,
                        str(e),
                        DeadLetter(
                            delivery_id=delivery.delivery_id,
                            notification_id=delivery.notification_id,
                            channel=self.name,
                            destination=delivery.destination,
                            reason=str(e),
                            attempts=attempts,
                            payload={"title": notification.title, "message": notification.message},
                        ),
                    )
                    metrics.record_dead_letter(self.name)
                    return ChannelOutcome(self.name, "failed", attempts, error=str(e))

                await self._ledger.mark_retrying(delivery, attempts, str(e))
                delay = backoff.next_delay()
                logger.info(
                    "Delivery %s (%s) attempt %d failed, retrying in %.2fs: %s",
                    delivery.delivery_id, self.name, attempts, delay, e,
                )
                if await self._backoff_sleep(delay):
                    logger.info(
                        "Shutdown requested; delivery %s left in retrying",
                        delivery.delivery_id,
                    )
                    return ChannelOutcome(self.name, "retrying", attempts, error=str(e))
                continue

            metrics.record_delivery_attempt(
                self.name, "sent", latency=time.monotonic() - started,
            )
            await self._ledger.mark_sent(delivery, attempts, provider_reference=reference or None)
            if attempts > 1:
                logger.info(
                    "Delivery %s (%s) sent on attempt %d",
                    delivery.delivery_id, self.name, attempts,
                )
            return ChannelOutcome(self.name, "sent", attempts, provider_reference=reference or None)


class EmailChannel(RetryingChannel):
    """Email delivery."""


class SmsChannel(RetryingChannel):
    """SMS delivery; title and message are folded into one body."""

    def render(self, notification: Notification) -> tuple[str, str]:
        return "", f"{notification.title}: {notification.message}"


class InAppChannel(ChannelAdapter):
    """Live push to connected clients; never retried, never fails."""

    def __init__(
        self,
        pusher: InAppPusher,
        ledger: DeliveryLedger,
        timeout: float = 2.0,
    ) -> None:
        self._pusher = pusher
        self._ledger = ledger
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "in_app"

    async def send(self, notification: Notification, delivery: Delivery) -> ChannelOutcome:
        note: str | None = None
        try:
            receivers = await asyncio.wait_for(
                self._pusher.push(notification), timeout=self._timeout,
            )
            if not receivers:
                note = "no active client"
        except Exception as e:
            note = f"live push failed: {e}"
            logger.info(
                "In-app push for notification %s failed (non-critical): %s",
                notification.notification_id, e,
            )

        attempts = delivery.attempts + 1
        get_metrics().record_delivery_attempt(self.name, "sent")
        await self._ledger.mark_sent(delivery, attempts, error=note)
        return ChannelOutcome(self.name, "sent", attempts, error=note)
