"""Alert evaluation engine for personal-finance alert rules.

Components:
- Alert / Notification: Dataclasses mapping to the alerts and notifications tables
- AlertConfig: Pydantic settings for cooldowns, ladders and concurrency
- Conditions models: Typed, validated per-type alert conditions
- Evaluators: One stateless evaluator per alert type
- DeduplicationEngine: Persisted per-type rules + volatile fingerprint cache
- AlertRepository: Alert reads, entity batch loads, atomic emit
- AlertEvaluationService: Orchestrator for evaluation runs
- AlertType / TriggerMode: Literal types; VALID_* frozensets for runtime validation
"""

from src.alerts.config import AlertConfig
from src.alerts.dedup import DeduplicationEngine
from src.alerts.errors import AlertValidationError, StaleAlertError
from src.alerts.evaluators import AlertEvaluator, build_evaluators, get_evaluator
from src.alerts.repository import AlertRepository
from src.alerts.schemas import (
    TRIGGER_MODE_TYPES,
    VALID_ALERT_TYPES,
    VALID_TRIGGER_MODES,
    Alert,
    AlertType,
    EvaluationContext,
    Notification,
    TriggerMode,
    TriggerResult,
)
from src.alerts.service import AlertEvaluationService, EvaluationPage

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertEvaluationService",
    "AlertEvaluator",
    "AlertRepository",
    "AlertType",
    "AlertValidationError",
    "DeduplicationEngine",
    "EvaluationContext",
    "EvaluationPage",
    "Notification",
    "StaleAlertError",
    "TRIGGER_MODE_TYPES",
    "TriggerMode",
    "TriggerResult",
    "VALID_ALERT_TYPES",
    "VALID_TRIGGER_MODES",
    "build_evaluators",
    "get_evaluator",
]
