"""Schema definitions for deliveries, delivery preferences and dead letters.

A ``Delivery`` is one (notification, channel) row in the delivery ledger.
Its status only moves forward along ``ALLOWED_TRANSITIONS``; ``delivered``,
``failed`` and ``bounced`` are terminal.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.notifications.errors import InvalidTransitionError

Channel = Literal["email", "sms", "in_app"]

VALID_CHANNELS: frozenset[str] = frozenset({"email", "sms", "in_app"})

DeliveryStatus = Literal["pending", "retrying", "sent", "delivered", "failed", "bounced"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"delivered", "failed", "bounced"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"retrying", "sent", "failed", "bounced"}),
    "retrying": frozenset({"retrying", "sent", "failed", "bounced"}),
    "sent": frozenset({"delivered", "bounced"}),
    "delivered": frozenset(),
    "failed": frozenset(),
    "bounced": frozenset(),
}

IN_APP_DESTINATION = "internal"

# Outcomes reported by the dispatcher that leave the row untouched
ChannelOutcomeStatus = Literal[
    "sent", "failed", "bounced", "retrying", "deferred", "rate_limited", "skipped",
]


def can_transition(current: str, target: str) -> bool:
    """Whether ``current -> target`` is a legal status change."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def idempotency_key(notification_id: str, channel: str) -> str:
    """Stable per-(notification, channel) key sent with every attempt."""
    digest = hashlib.sha256(f"{notification_id}:{channel}".encode("utf-8"))
    return digest.hexdigest()[:40]


@dataclass
class Delivery:
    """One channel-specific delivery of a notification."""

    notification_id: str
    channel: str
    destination: str
    delivery_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: int | None = None
    status: str = "pending"
    attempts: int = 0
    provider_reference: str | None = None
    error: str | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.channel not in VALID_CHANNELS:
            raise ValueError(
                f"Invalid channel {self.channel!r}. "
                f"Must be one of: {sorted(VALID_CHANNELS)}"
            )
        if self.status not in ALLOWED_TRANSITIONS:
            raise ValueError(f"Invalid delivery status {self.status!r}")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def idempotency_key(self) -> str:
        return idempotency_key(self.notification_id, self.channel)

    def transition(self, target: str) -> None:
        """Move to ``target`` in memory, enforcing the state machine.

        Raises:
            InvalidTransitionError: The move is not allowed.
        """
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.delivery_id, self.status, target)
        self.status = target

    def to_dict(self) -> dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "notification_id": self.notification_id,
            "channel": self.channel,
            "destination": self.destination,
            "status": self.status,
            "attempts": self.attempts,
            "provider_reference": self.provider_reference,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
        }


@dataclass
class ChannelOutcome:
    """What happened to one channel when a notification was delivered."""

    channel: str
    status: str
    attempts: int = 0
    provider_reference: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


@dataclass
class QuietHours:
    """Daily window (user-local) during which email/SMS wait.

    ``start == end`` disables the window; ``start > end`` wraps midnight.
    """

    start: time
    end: time
    timezone: str = "UTC"

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC")

    def contains(self, moment: datetime) -> bool:
        """Whether ``moment`` (aware) falls inside the window."""
        if self.start == self.end:
            return False
        local = moment.astimezone(self.tz).time()
        if self.start < self.end:
            return self.start <= local < self.end
        return local >= self.start or local < self.end

    def window_end(self, moment: datetime) -> datetime:
        """Next end of the window after ``moment``, in UTC."""
        local = moment.astimezone(self.tz)
        end = local.replace(
            hour=self.end.hour, minute=self.end.minute, second=0, microsecond=0,
        )
        if end <= local:
            end += timedelta(days=1)
        return end.astimezone(timezone.utc)


@dataclass
class DeliveryPreferences:
    """Per-user delivery settings read from the preference store.

    Rate limits of 0 mean unlimited.
    """

    user_id: int
    email: str | None = None
    email_enabled: bool = True
    sms_number: str | None = None
    sms_enabled: bool = False
    quiet_hours: QuietHours | None = None
    max_per_hour: int = 0
    max_per_day: int = 0
    merchant_alert_mode: str = "immediate"

    def destination_for(self, channel: str) -> str | None:
        """Destination for ``channel``, or None if the user disabled it."""
        if channel == "in_app":
            return IN_APP_DESTINATION
        if channel == "email":
            return self.email if self.email_enabled and self.email else None
        if channel == "sms":
            return self.sms_number if self.sms_enabled and self.sms_number else None
        return None


@dataclass
class DeadLetter:
    """A delivery that exhausted its retries."""

    delivery_id: str
    notification_id: str
    channel: str
    destination: str
    reason: str
    attempts: int
    dead_letter_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    payload: dict[str, Any] = field(default_factory=dict)
    replayed_at: datetime | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "dead_letter_id": self.dead_letter_id,
            "delivery_id": self.delivery_id,
            "notification_id": self.notification_id,
            "channel": self.channel,
            "destination": self.destination,
            "reason": self.reason,
            "attempts": self.attempts,
            "payload": self.payload,
            "replayed_at": self.replayed_at.isoformat() if self.replayed_at else None,
            "created_at": self.created_at.isoformat(),
        }
