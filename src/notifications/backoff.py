"""
Exponential backoff for delivery retries.

Each channel has its own ``RetryPolicy`` (attempt budget, initial delay,
multiplier, cap). Delays grow as ``initial * multiplier^n`` up to the cap,
then get multiplicative jitter so retries from many deliveries spread out.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters for one channel."""

    max_attempts: int
    initial_delay: float
    multiplier: float
    max_delay: float
    jitter: float = 0.25


class ExponentialBackoff:
    """
    Exponential backoff with multiplicative jitter.

    Computes delays as: min(initial * multiplier^attempt, max_delay) * (1 ± jitter).
    Call reset() after a successful operation to zero the attempt counter.

    Usage:
        backoff = ExponentialBackoff.from_policy(policy)
        for attempt in range(policy.max_attempts):
            try:
                return await send()
            except ProviderServerError:
                await asyncio.sleep(backoff.next_delay())
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter_range: float = 0.25,
        rng: random.Random | None = None,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_range = jitter_range
        self._rng = rng or random.Random()
        self._attempt = 0

    @classmethod
    def from_policy(
        cls,
        policy: RetryPolicy,
        rng: random.Random | None = None,
    ) -> "ExponentialBackoff":
        return cls(
            base_delay=policy.initial_delay,
            max_delay=policy.max_delay,
            multiplier=policy.multiplier,
            jitter_range=policy.jitter,
            rng=rng,
        )

    @property
    def attempt(self) -> int:
        """Current attempt count."""
        return self._attempt

    def next_delay(self) -> float:
        """Calculate and return the next backoff delay, incrementing the attempt counter."""
        delay = min(
            self.base_delay * (self.multiplier ** self._attempt),
            self.max_delay,
        )
        factor = 1.0 + self._rng.uniform(-self.jitter_range, self.jitter_range)
        self._attempt += 1
        return max(0.0, delay * factor)

    def reset(self) -> None:
        """Reset the attempt counter after a successful operation."""
        self._attempt = 0
