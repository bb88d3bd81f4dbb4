"""Exceptions raised while evaluating alerts."""

import asyncpg


class AlertValidationError(ValueError):
    """An alert's stored conditions do not match its alert type.

    The alert is skipped for the current run; it stays broken until the
    owner edits it.
    """

    def __init__(self, alert_type: str, errors: list[str]) -> None:
        self.alert_type = alert_type
        self.errors = errors
        super().__init__(
            f"Invalid {alert_type} conditions: {'; '.join(errors)}"
        )


class StaleAlertError(RuntimeError):
    """The alert row changed between load and emit (optimistic lock lost)."""

    def __init__(self, alert_id: int, expected_version: int) -> None:
        self.alert_id = alert_id
        self.expected_version = expected_version
        super().__init__(
            f"Alert {alert_id} is no longer at version {expected_version}"
        )


# Errors that abort the remainder of a run instead of being isolated per alert
INFRASTRUCTURE_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    ConnectionError,
    OSError,
)
