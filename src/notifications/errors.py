"""Exceptions raised by provider clients, the circuit breaker and the ledger.

Provider failures are split by whether retrying can help:

- ``ProviderClientError`` (4xx class): the request itself is wrong or the
  destination is rejected. Never retried. ``bounced`` marks a permanent
  rejection of the destination (invalid address, unsubscribed number).
- ``ProviderServerError`` / ``ProviderTimeoutError`` / ``CircuitOpenError``:
  transient; retried with backoff up to the channel's attempt budget.
"""


class ProviderError(Exception):
    """Base class for delivery provider failures."""

    retryable: bool = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProviderClientError(ProviderError):
    """Client/validation-class rejection (HTTP 4xx equivalent)."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        bounced: bool = False,
    ) -> None:
        self.bounced = bounced
        super().__init__(message, status_code)


class ProviderServerError(ProviderError):
    """Server-side or transport failure (HTTP 5xx equivalent)."""


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the call timeout.

    Ambiguous: the message may have been accepted. Retries reuse the same
    idempotency key so a provider that deduplicates will not send twice.
    """


class CircuitOpenError(ProviderError):
    """Raised when calling through an open circuit breaker."""


class InvalidTransitionError(ValueError):
    """A delivery status change that the state machine forbids."""

    def __init__(self, delivery_id: str, current: str, target: str) -> None:
        self.delivery_id = delivery_id
        self.current = current
        self.target = target
        super().__init__(
            f"Delivery {delivery_id} cannot move from {current!r} to {target!r}"
        )
