"""Notification delivery: channels, retries, circuit breaking, ledger and dead letters."""

from src.notifications.channels import (
    ChannelAdapter,
    EmailChannel,
    InAppChannel,
    RetryingChannel,
    SmsChannel,
)
from src.notifications.circuit_breaker import CircuitBreaker, CircuitState
from src.notifications.config import NotificationConfig
from src.notifications.dead_letter import DeadLetterSink
from src.notifications.dispatcher import NotificationDispatcher, build_dispatcher
from src.notifications.errors import (
    CircuitOpenError,
    InvalidTransitionError,
    ProviderClientError,
    ProviderError,
    ProviderServerError,
    ProviderTimeoutError,
)
from src.notifications.ledger import DeliveryLedger
from src.notifications.preferences import PreferenceRepository
from src.notifications.repository import NotificationRepository
from src.notifications.schemas import (
    ChannelOutcome,
    DeadLetter,
    Delivery,
    DeliveryPreferences,
    QuietHours,
)

__all__ = [
    "ChannelAdapter",
    "ChannelOutcome",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "DeadLetter",
    "DeadLetterSink",
    "Delivery",
    "DeliveryLedger",
    "DeliveryPreferences",
    "EmailChannel",
    "InAppChannel",
    "InvalidTransitionError",
    "NotificationConfig",
    "NotificationDispatcher",
    "NotificationRepository",
    "PreferenceRepository",
    "ProviderClientError",
    "ProviderError",
    "ProviderServerError",
    "ProviderTimeoutError",
    "QuietHours",
    "RetryingChannel",
    "SmsChannel",
    "build_dispatcher",
]
