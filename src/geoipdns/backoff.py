"""Exponential backoff between failed database refreshes."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING, Self

from tenacity.wait import wait_base

if TYPE_CHECKING:
    from tenacity import RetryCallState

    from geoipdns.models import UpdatePolicy

# 2**64 seconds is far beyond any usable ceiling.
_MAX_EXPONENT = 64


class BackoffPolicy(wait_base):
    """Delay before the next attempt after consecutive failures.

    The delay for a zero-based ``attempt`` is
    ``min(base * 2**attempt + uniform(0, jitter), max_delay)``. Instances work
    as a tenacity wait strategy.

    Example:
        policy = BackoffPolicy(base=1.0, max_delay=60.0, rng=random.Random(0))
        policy.compute(0)  # between 1 and 2 seconds
        policy.compute(10)  # 60 seconds

    """

    def __init__(
        self,
        base: float = 1.0,
        max_delay: float = 3600.0,
        jitter: float = 1.0,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the policy.

        Args:
            base: Delay in seconds after the first failure, before jitter.
            max_delay: Upper bound for any delay, in seconds.
            jitter: Upper bound of the random delay added to each attempt.
            rng: Source of randomness for the jitter.

        """
        if base < 0 or max_delay < 0 or jitter < 0:
            msg = "backoff values must not be negative"
            raise ValueError(msg)
        self.base = base
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def for_update_policy(
        cls, policy: UpdatePolicy, rng: random.Random | None = None
    ) -> Self:
        """Build a policy capped at the update policy's max retry interval."""
        max_delay = policy.max_retry_interval.total_seconds()
        return cls(base=min(1.0, max_delay), max_delay=max_delay, rng=rng)

    def compute(self, attempt: int) -> float:
        """Return the delay in seconds after the given zero-based attempt."""
        exponent = min(max(attempt, 0), _MAX_EXPONENT)
        delay = self.base * 2**exponent
        if self.jitter:
            delay += self._rng.uniform(0, self.jitter)
        return min(delay, self.max_delay)

    def __call__(self, retry_state: RetryCallState) -> float:
        """Return the delay for a tenacity retry state."""
        return self.compute(retry_state.attempt_number - 1)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(base={self.base!r}, "
            f"max_delay={self.max_delay!r}, jitter={self.jitter!r})"
        )
