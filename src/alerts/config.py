"""Alert evaluation configuration.

Controls cooldowns, the fingerprint cache window, evaluation concurrency,
batch paging, and the milestone/threshold ladders for goal and spending
alerts. All settings can be overridden via ``ALERTS_*`` environment
variables.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AlertConfig(BaseSettings):
    """Configuration for the alert evaluation engine."""

    model_config = SettingsConfigDict(
        env_prefix="ALERTS_",
        case_sensitive=False,
        extra="ignore",
    )

    # Account threshold: minimum gap between repeat firings in one direction
    threshold_cooldown_hours: float = Field(
        default=6.0,
        gt=0.0,
        le=168.0,
        description="Hours to suppress repeat account_threshold firings",
    )

    # Volatile fingerprint cache (Redis)
    fingerprint_ttl_seconds: int = Field(
        default=1800,
        ge=60,
        le=86400,
        description="TTL of the short-window duplicate fingerprint cache",
    )
    fingerprint_key_prefix: str = Field(
        default="alert:fp",
        description="Redis key prefix for trigger fingerprints",
    )

    # Concurrency and paging
    evaluation_concurrency: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Alerts evaluated concurrently per chunk for one user",
    )
    user_page_size: int = Field(
        default=100,
        ge=1,
        le=10_000,
        description="Users per page for batch (periodic) runs",
    )
    user_concurrency: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Users evaluated concurrently within one page",
    )

    # Optimistic concurrency on alerts.version
    stale_emit_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Reload-and-retry rounds when a concurrent run moved the alert",
    )

    # Milestone ladders
    goal_milestones: list[int] = Field(
        default=[25, 50, 75, 100],
        description="Goal progress percentages that produce notifications",
    )
    spending_thresholds: list[int] = Field(
        default=[50, 80, 90, 100],
        description="Budget usage percentages that produce notifications",
    )

    @field_validator("goal_milestones", "spending_thresholds")
    @classmethod
    def _sorted_positive(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("ladder must not be empty")
        if any(v <= 0 for v in value):
            raise ValueError("ladder values must be positive")
        return sorted(set(value))
