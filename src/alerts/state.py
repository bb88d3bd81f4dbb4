"""Per-alert evaluation state persisted in ``alerts.evaluation_metadata``.

Each alert type that deduplicates against history has an explicit state
record. The record is versioned so a future shape change can migrate old
rows instead of misreading them. Unknown or missing payloads load as a
fresh state; the worst outcome is one repeat notification.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

STATE_VERSION = 1


@dataclass
class AccountThresholdState:
    """Direction of the last firing; the timestamp lives on the alert row."""

    last_direction: str | None = None
    version: int = STATE_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "last_direction": self.last_direction}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountThresholdState":
        return cls(last_direction=data.get("last_direction"))


@dataclass
class GoalState:
    """Milestones (percent) already notified, ascending."""

    milestones_notified: list[int] = field(default_factory=list)
    version: int = STATE_VERSION

    @property
    def highest_notified(self) -> int:
        return max(self.milestones_notified, default=0)

    def record(self, milestone: int) -> None:
        if milestone not in self.milestones_notified:
            self.milestones_notified = sorted([*self.milestones_notified, milestone])

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "milestones_notified": list(self.milestones_notified),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GoalState":
        return cls(
            milestones_notified=sorted(int(m) for m in data.get("milestones_notified", [])),
        )


@dataclass
class SpendingTargetState:
    """Thresholds sent during ``period`` (``YYYY-MM``)."""

    period: str | None = None
    thresholds_sent: list[int] = field(default_factory=list)
    version: int = STATE_VERSION

    def sent_in(self, period: str) -> list[int]:
        """Thresholds already sent for ``period``; empty once the period rolls."""
        if self.period != period:
            return []
        return list(self.thresholds_sent)

    def record(self, period: str, threshold: int) -> None:
        if self.period != period:
            self.period = period
            self.thresholds_sent = []
        if threshold not in self.thresholds_sent:
            self.thresholds_sent = sorted([*self.thresholds_sent, threshold])

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "period": self.period,
            "thresholds_sent": list(self.thresholds_sent),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SpendingTargetState":
        return cls(
            period=data.get("period"),
            thresholds_sent=sorted(int(t) for t in data.get("thresholds_sent", [])),
        )


@dataclass
class UpcomingBillState:
    """Due date of the occurrence most recently notified."""

    last_due_date_notified: date | None = None
    version: int = STATE_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "last_due_date_notified": (
                self.last_due_date_notified.isoformat()
                if self.last_due_date_notified else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UpcomingBillState":
        raw = data.get("last_due_date_notified")
        if isinstance(raw, str):
            raw = date.fromisoformat(raw)
        elif isinstance(raw, datetime):
            raw = raw.date()
        return cls(last_due_date_notified=raw)


@dataclass
class StatelessState:
    """Alert types whose suppression does not depend on stored history."""

    version: int = STATE_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatelessState":
        return cls()


EvaluationState = (
    AccountThresholdState
    | GoalState
    | SpendingTargetState
    | UpcomingBillState
    | StatelessState
)

STATE_MODELS: dict[str, type] = {
    "account_threshold": AccountThresholdState,
    "goal": GoalState,
    "merchant_name": StatelessState,
    "spending_target": SpendingTargetState,
    "transaction_limit": StatelessState,
    "upcoming_bill": UpcomingBillState,
}


def load_state(alert_type: str, raw: dict[str, Any] | None) -> EvaluationState:
    """Build the typed state for ``alert_type`` from stored metadata.

    Payloads written by a newer release are ignored rather than guessed at.
    """
    model = STATE_MODELS.get(alert_type, StatelessState)
    raw = raw or {}
    if raw.get("version", STATE_VERSION) > STATE_VERSION:
        return model()
    try:
        return model.from_dict(raw)
    except (TypeError, ValueError):
        return model()
