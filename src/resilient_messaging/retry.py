"""RetryPolicy and RetryScheduler — exponential backoff, capped, with jitter."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, model_validator

if TYPE_CHECKING:
    from collections.abc import Callable


class RetryPolicy(BaseModel):
    """Immutable retry configuration shared read-only by all workers.

    Intervals are in seconds. ``max_retries`` is the number of retry
    republications; a message whose attempt count reaches it is terminal.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    initial_interval: float = Field(default=1.0, gt=0)
    max_interval: float = Field(default=60.0, gt=0)
    multiplier: float = Field(default=2.0, gt=1)
    jitter_factor: float = Field(default=0.1, ge=0, le=1)

    @model_validator(mode="after")
    def _check_intervals(self) -> RetryPolicy:
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must be >= initial_interval")
        return self

    def should_retry(self, attempt: int) -> bool:
        """Return True if a message at *attempt* (0-based) may be retried."""
        return 0 <= attempt < self.max_retries


class RetryScheduler:
    """Computes retry delays for a :class:`RetryPolicy`.

    ``rng`` returns a uniform value in ``[0, 1)``; override it for
    deterministic tests.
    """

    def __init__(self, rng: Callable[[], float] | None = None) -> None:
        self._rng = rng or random.random

    def next_delay(self, attempt: int, policy: RetryPolicy) -> float:
        """Return the delay in seconds before retry number *attempt* (0-based).

        ``base = initial * multiplier**attempt`` capped at ``max_interval``,
        then perturbed by ``±jitter_factor`` and clamped to
        ``[0, max_interval]``.
        """
        attempt = max(attempt, 0)
        try:
            base = policy.initial_interval * policy.multiplier**attempt
        except OverflowError:
            base = policy.max_interval
        base = min(base, policy.max_interval)
        if policy.jitter_factor:
            u = self._rng()
            base = base * (1 + policy.jitter_factor * (2 * u - 1))
        return float(min(max(base, 0.0), policy.max_interval))
