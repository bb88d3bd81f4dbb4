"""Circuit breaker for wrapping calls to an external delivery provider.

One breaker per provider, created at startup and shared by every delivery
that uses that provider. Its state is exposed (and exported as a metric)
rather than hidden.

Usage:
    breaker = CircuitBreaker(name="email", failure_threshold=5, recovery_timeout=60.0)
    try:
        result = await breaker.call(provider.send, message)
    except CircuitOpenError:
        # transient; retry after backoff
"""

import enum
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

from src.notifications.errors import CircuitOpenError
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Wraps async provider calls with circuit breaker protection.

    State machine: CLOSED → OPEN → HALF_OPEN → CLOSED.

    - CLOSED: Calls pass through. Consecutive failures tracked; reaching
      ``failure_threshold`` opens the circuit.
    - OPEN: Calls rejected with CircuitOpenError without touching the
      provider. After ``recovery_timeout`` seconds, moves to HALF_OPEN.
    - HALF_OPEN: One trial call at a time. ``success_threshold``
      consecutive successes close the circuit; any failure reopens it.

    Exceptions listed in ``ignored_exceptions`` (e.g. 4xx rejections of a
    single bad address) pass through without counting as provider failures.

    Args:
        name: Provider name used in logs and metrics.
        failure_threshold: Consecutive failures before opening circuit.
        recovery_timeout: Seconds before attempting a trial call.
        success_threshold: Trial successes needed to close the circuit.
        ignored_exceptions: Exception types that do not count as failures.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        name: str = "circuit_breaker",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._success_threshold = success_threshold
        self._ignored = ignored_exceptions
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._half_open_successes = 0
        self._trial_in_flight = False
        self._opened_at: float = 0.0

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        return self._state

    @property
    def consecutive_failures(self) -> int:
        """Number of consecutive failures."""
        return self._consecutive_failures

    def snapshot(self) -> dict[str, Any]:
        """State for health/inspection endpoints."""
        return {
            "name": self._name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "half_open_successes": self._half_open_successes,
        }

    def _set_state(self, state: CircuitState) -> None:
        self._state = state
        get_metrics().set_circuit_state(self._name, state.value)

    def _admit(self) -> None:
        """Decide whether a call may proceed, raising if not."""
        if self._state == CircuitState.OPEN:
            if self._clock() - self._opened_at < self._recovery_timeout:
                raise CircuitOpenError(f"Circuit breaker {self._name} is OPEN")
            self._set_state(CircuitState.HALF_OPEN)
            self._half_open_successes = 0
            logger.info(
                "Circuit breaker %s: OPEN → HALF_OPEN (recovery probe)", self._name,
            )

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit breaker {self._name} is HALF_OPEN with a trial in flight"
                )
            self._trial_in_flight = True

    async def call(
        self,
        fn: Callable[..., Coroutine[Any, Any, T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Execute an async function through the circuit breaker.

        Raises:
            CircuitOpenError: Circuit is open, or a half-open trial is
                already running.
        """
        self._admit()
        is_trial = self._state == CircuitState.HALF_OPEN

        try:
            result = await fn(*args, **kwargs)
        except self._ignored:
            raise
        except Exception:
            self._record_failure()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False

        self._record_success()
        return result

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        if self._state != CircuitState.HALF_OPEN:
            return

        self._half_open_successes += 1
        if self._half_open_successes >= self._success_threshold:
            self._set_state(CircuitState.CLOSED)
            self._half_open_successes = 0
            logger.info(
                "Circuit breaker %s: HALF_OPEN → CLOSED (probe succeeded)", self._name,
            )

    def _record_failure(self) -> None:
        """Record a failure and potentially open the circuit."""
        self._consecutive_failures += 1

        if self._state == CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN)
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker %s: HALF_OPEN → OPEN (probe failed)", self._name,
            )
        elif (
            self._state == CircuitState.CLOSED
            and self._consecutive_failures >= self._failure_threshold
        ):
            self._set_state(CircuitState.OPEN)
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker %s: CLOSED → OPEN after %d failures",
                self._name,
                self._consecutive_failures,
            )

    def reset(self) -> None:
        """Force the circuit closed (operator action)."""
        self._set_state(CircuitState.CLOSED)
        self._consecutive_failures = 0
        self._half_open_successes = 0
        self._trial_in_flight = False
