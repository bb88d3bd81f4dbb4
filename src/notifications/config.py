"""Notification delivery configuration.

Per-channel retry policies, circuit breaker tuning, provider call timeouts,
default rate limits and the in-app push channel. All settings can be
overridden via ``NOTIFICATIONS_*`` environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.notifications.backoff import RetryPolicy


class NotificationConfig(BaseSettings):
    """Configuration for notification delivery."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATIONS_",
        case_sensitive=False,
        extra="ignore",
    )

    # Email retry policy
    email_max_attempts: int = Field(default=5, ge=1, le=10)
    email_initial_delay: float = Field(default=1.0, ge=0.0)
    email_multiplier: float = Field(default=2.0, ge=1.0)
    email_max_delay: float = Field(default=300.0, ge=0.0)

    # SMS retry policy
    sms_max_attempts: int = Field(default=3, ge=1, le=10)
    sms_initial_delay: float = Field(default=2.0, ge=0.0)
    sms_multiplier: float = Field(default=3.0, ge=1.0)
    sms_max_delay: float = Field(default=60.0, ge=0.0)

    retry_jitter: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Multiplicative jitter fraction applied to every backoff delay",
    )

    # Circuit breaker (one per provider)
    circuit_breaker_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures before circuit opens",
    )
    circuit_breaker_recovery_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Seconds before circuit breaker allows a trial call",
    )
    circuit_breaker_success_threshold: int = Field(
        default=2,
        ge=1,
        description="Trial successes needed to close a half-open circuit",
    )

    # Provider call timeouts
    email_timeout_seconds: float = Field(default=10.0, gt=0.0)
    sms_timeout_seconds: float = Field(default=10.0, gt=0.0)
    in_app_timeout_seconds: float = Field(default=2.0, gt=0.0)

    # Defaults when a user has no explicit limits (0 = unlimited)
    default_max_per_hour: int = Field(default=0, ge=0)
    default_max_per_day: int = Field(default=0, ge=0)

    # In-app push
    in_app_channel_prefix: str = Field(
        default="notifications:user",
        description="Redis pub/sub channel prefix for live in-app pushes",
    )

    # Re-drive of pending deliveries
    pending_batch_size: int = Field(default=200, ge=1, le=5000)

    def retry_policy(self, channel: str) -> RetryPolicy:
        """Retry policy for ``channel``; in-app never retries."""
        if channel == "email":
            return RetryPolicy(
                max_attempts=self.email_max_attempts,
                initial_delay=self.email_initial_delay,
                multiplier=self.email_multiplier,
                max_delay=self.email_max_delay,
                jitter=self.retry_jitter,
            )
        if channel == "sms":
            return RetryPolicy(
                max_attempts=self.sms_max_attempts,
                initial_delay=self.sms_initial_delay,
                multiplier=self.sms_multiplier,
                max_delay=self.sms_max_delay,
                jitter=self.retry_jitter,
            )
        return RetryPolicy(max_attempts=1, initial_delay=0.0, multiplier=1.0, max_delay=0.0)

    def timeout_for(self, channel: str) -> float:
        return {
            "email": self.email_timeout_seconds,
            "sms": self.sms_timeout_seconds,
        }.get(channel, self.in_app_timeout_seconds)
