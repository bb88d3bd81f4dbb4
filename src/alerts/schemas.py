"""Schema definitions for alerts, notifications and evaluation runs.

``Alert`` and ``Notification`` map to the ``alerts`` and ``notifications``
tables. ``EvaluationContext`` and ``TriggerResult`` are transient: they
exist for the duration of one evaluation run and are never persisted.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from src.alerts.entities import Account, Bill, Budget, Goal, Transaction

AlertType = Literal[
    "account_threshold",
    "goal",
    "merchant_name",
    "spending_target",
    "transaction_limit",
    "upcoming_bill",
]

VALID_ALERT_TYPES: frozenset[str] = frozenset({
    "account_threshold",
    "goal",
    "merchant_name",
    "spending_target",
    "transaction_limit",
    "upcoming_bill",
})

TriggerMode = Literal["scheduled", "daily", "realtime", "manual"]

VALID_TRIGGER_MODES: frozenset[str] = frozenset({
    "scheduled",
    "daily",
    "realtime",
    "manual",
})

# Alert types each trigger mode evaluates
TRIGGER_MODE_TYPES: dict[str, frozenset[str]] = {
    "scheduled": frozenset({"account_threshold", "goal", "spending_target"}),
    "daily": frozenset({"upcoming_bill"}),
    "realtime": frozenset({"merchant_name", "transaction_limit"}),
    "manual": VALID_ALERT_TYPES,
}

MerchantAlertMode = Literal["immediate", "first_of_day", "daily_digest"]


@dataclass
class Alert:
    """A user-owned alert rule from the alerts table.

    Attributes:
        alert_id: Primary key.
        user_id: Owning user.
        alert_type: Discriminant selecting evaluator, conditions and state.
        name: User-facing label, used as notification title.
        conditions: Raw JSONB conditions; parsed per type on evaluation.
        source_type: Kind of entity referenced (account, goal, budget, bill).
        source_id: Id of the referenced entity.
        email_enabled / sms_enabled: Per-alert channel flags.
        active: Inactive alerts are never evaluated.
        last_triggered_at: When the alert last produced a notification.
        evaluation_metadata: Raw per-type dedup state (see ``state.py``).
        version: Optimistic-concurrency counter bumped on every emit.
    """

    alert_id: int
    user_id: int
    alert_type: str
    name: str
    conditions: dict[str, Any] = field(default_factory=dict)
    source_type: str | None = None
    source_id: int | None = None
    email_enabled: bool = True
    sms_enabled: bool = False
    active: bool = True
    last_triggered_at: datetime | None = None
    evaluation_metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def __post_init__(self) -> None:
        if self.alert_type not in VALID_ALERT_TYPES:
            raise ValueError(
                f"Invalid alert_type {self.alert_type!r}. "
                f"Must be one of: {sorted(VALID_ALERT_TYPES)}"
            )


@dataclass
class Notification:
    """A user-visible notification created when an alert fires."""

    user_id: int
    title: str
    message: str
    alert_id: int | None = None
    notification_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: dict[str, Any] = field(default_factory=dict)
    read: bool = False
    read_at: datetime | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "alert_id": self.alert_id,
            "title": self.title,
            "message": self.message,
            "metadata": self.metadata,
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        elif created_at is None:
            created_at = datetime.now(timezone.utc)

        read_at = data.get("read_at")
        if isinstance(read_at, str):
            read_at = datetime.fromisoformat(read_at)

        metadata = data.get("metadata", {})
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return cls(
            notification_id=str(data.get("notification_id") or uuid.uuid4()),
            user_id=data["user_id"],
            alert_id=data.get("alert_id"),
            title=data["title"],
            message=data["message"],
            metadata=metadata,
            read=data.get("read", False),
            read_at=read_at,
            created_at=created_at,
        )


@dataclass
class TriggerResult:
    """Evaluator output for one alert.

    ``metadata`` carries the values substituted into the message; it is
    also what the fingerprint cache hashes.
    """

    alert_id: int
    fires: bool
    title: str = ""
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def quiet(cls, alert_id: int, **metadata: Any) -> "TriggerResult":
        return cls(alert_id=alert_id, fires=False, metadata=metadata)

    def fingerprint(self) -> str:
        """Stable hash of the trigger metadata."""
        payload = json.dumps(self.metadata, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


@dataclass
class EvaluationContext:
    """Inputs for evaluating one user's alerts.

    Callers fill ``user_id``, ``trigger_mode`` and (for realtime runs) the
    triggering transaction. The orchestrator batch-loads the entity maps
    before any evaluator runs, so evaluators never fetch.
    """

    user_id: int
    trigger_mode: str = "scheduled"
    transaction: Transaction | None = None
    transaction_id: int | None = None
    accounts: dict[int, Account] = field(default_factory=dict)
    goals: dict[int, Goal] = field(default_factory=dict)
    budgets: dict[int, Budget] = field(default_factory=dict)
    bills: dict[int, Bill] = field(default_factory=dict)
    merchant_alert_mode: str = "immediate"
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self) -> None:
        if self.trigger_mode not in VALID_TRIGGER_MODES:
            raise ValueError(
                f"Invalid trigger_mode {self.trigger_mode!r}. "
                f"Must be one of: {sorted(VALID_TRIGGER_MODES)}"
            )

    @property
    def alert_types(self) -> frozenset[str]:
        """Alert types this run evaluates."""
        return TRIGGER_MODE_TYPES[self.trigger_mode]
