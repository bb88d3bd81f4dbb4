"""
Prometheus metrics for alert evaluation and notification delivery.

Defines and exposes metrics for:
- Alert evaluations and their results
- Notifications created and suppressed
- Delivery attempts, dead letters, provider latency
- Circuit breaker state per provider

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for provider latency histograms (in seconds)
LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

# Gauge values for circuit state
CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """
    Prometheus metrics collector for the alert engine.

    Usage:
        metrics = get_metrics()
        metrics.record_evaluation("goal", "fired")
        metrics.record_delivery_attempt("email", "sent", latency=0.4)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        # Evaluation
        self.alerts_evaluated = Counter(
            "finance_alerts_evaluated_total",
            "Total alert evaluations",
            ["alert_type", "result"],  # result: fired, quiet, skipped
        )

        self.evaluation_errors = Counter(
            "finance_alerts_evaluation_errors_total",
            "Alert evaluations that raised",
            ["alert_type", "kind"],  # kind: validation, stale, unexpected
        )

        self.notifications_created = Counter(
            "finance_alerts_notifications_created_total",
            "Notifications created after deduplication",
            ["alert_type"],
        )

        self.notifications_suppressed = Counter(
            "finance_alerts_notifications_suppressed_total",
            "Fired alerts suppressed by deduplication",
            ["alert_type", "reason"],
        )

        # Delivery
        self.delivery_attempts = Counter(
            "finance_alerts_delivery_attempts_total",
            "Channel delivery attempts by outcome",
            ["channel", "outcome"],
        )

        self.dead_letters = Counter(
            "finance_alerts_dead_letters_total",
            "Deliveries moved to the dead letter sink",
            ["channel"],
        )

        self.provider_latency = Histogram(
            "finance_alerts_provider_latency_seconds",
            "External provider call latency",
            ["channel"],
            buckets=LATENCY_BUCKETS,
        )

        self.circuit_state = Gauge(
            "finance_alerts_circuit_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["provider"],
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info("Prometheus metrics server started on port %d", port)

    def record_evaluation(self, alert_type: str, result: str) -> None:
        self.alerts_evaluated.labels(alert_type=alert_type, result=result).inc()

    def record_evaluation_error(self, alert_type: str, kind: str) -> None:
        self.evaluation_errors.labels(alert_type=alert_type, kind=kind).inc()

    def record_notification(self, alert_type: str) -> None:
        self.notifications_created.labels(alert_type=alert_type).inc()

    def record_suppressed(self, alert_type: str, reason: str) -> None:
        self.notifications_suppressed.labels(
            alert_type=alert_type, reason=reason,
        ).inc()

    def record_delivery_attempt(
        self,
        channel: str,
        outcome: str,
        latency: float | None = None,
    ) -> None:
        """
        Record one provider attempt.

        Args:
            channel: email, sms or in_app
            outcome: sent, transient, client_error, circuit_open
            latency: Optional provider call latency in seconds
        """
        self.delivery_attempts.labels(channel=channel, outcome=outcome).inc()
        if latency is not None:
            self.provider_latency.labels(channel=channel).observe(latency)

    def record_dead_letter(self, channel: str) -> None:
        self.dead_letters.labels(channel=channel).inc()

    def set_circuit_state(self, provider: str, state: str) -> None:
        self.circuit_state.labels(provider=provider).set(
            CIRCUIT_STATE_VALUES.get(state, 0)
        )


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
