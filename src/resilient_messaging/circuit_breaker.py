"""CircuitBreaker — per-dependency three-state failure guard.

Each dependency key owns its own breaker and its own lock, so unrelated
dependencies never contend. The handler itself runs outside the lock; only
the gate check and the result transition are serialized.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import CircuitOpenError, PermanentError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("resilient_messaging.circuit_breaker")

T = TypeVar("T")


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerConfig(BaseModel):
    """Thresholds for a breaker; ``reset_timeout`` is in seconds."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=30.0, gt=0)


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time snapshot of a breaker, safe to hand to callers."""

    key: str
    state: CircuitState
    consecutive_failures: int
    last_failure_at: float | None
    failure_threshold: int
    reset_timeout: float


class CircuitBreaker:
    """Closed → Open after ``failure_threshold`` consecutive failures.

    Open rejects with :class:`CircuitOpenError` until ``reset_timeout`` has
    elapsed since the last failure; the next call then moves to Half-Open
    and is the single trial. A successful trial closes the breaker, a failed
    one re-opens it. Callers arriving while the trial is in flight are
    rejected.

    Exceptions listed in ``ignore`` propagate without counting as failures;
    by default a :class:`PermanentError` says something about the message,
    not about the dependency.
    """

    def __init__(
        self,
        key: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
        ignore: tuple[type[BaseException], ...] = (PermanentError,),
    ) -> None:
        self.key = key
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or time.monotonic
        self._ignore = ignore
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def state_snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            key=self.key,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            last_failure_at=self._last_failure_at,
            failure_threshold=self.config.failure_threshold,
            reset_timeout=self.config.reset_timeout,
        )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* through the breaker."""
        is_trial = await self._before_call()
        try:
            result = await operation()
        except self._ignore:
            await self._on_neutral(is_trial)
            raise
        except Exception:
            await self._on_failure(is_trial)
            raise
        except BaseException:
            # Cancellation says nothing about the dependency.
            await self._on_neutral(is_trial)
            raise
        await self._on_success(is_trial)
        return result

    async def reset(self) -> None:
        """Force the breaker back to Closed (operator action)."""
        async with self._lock:
            self._transition(CircuitState.CLOSED)
            self._consecutive_failures = 0
            self._trial_in_flight = False

    async def _before_call(self) -> bool:
        async with self._lock:
            if self._state is CircuitState.CLOSED:
                return False
            if self._state is CircuitState.OPEN:
                remaining = self._remaining_open_time()
                if remaining > 0:
                    raise CircuitOpenError(self.key, retry_after=remaining)
                self._transition(CircuitState.HALF_OPEN)
            if self._trial_in_flight:
                raise CircuitOpenError(self.key, retry_after=0.0)
            self._trial_in_flight = True
            return True

    async def _on_success(self, is_trial: bool) -> None:
        async with self._lock:
            if is_trial:
                self._trial_in_flight = False
                self._transition(CircuitState.CLOSED)
            if self._state is CircuitState.CLOSED:
                self._consecutive_failures = 0

    async def _on_failure(self, is_trial: bool) -> None:
        async with self._lock:
            now = self._clock()
            if is_trial:
                self._trial_in_flight = False
                self._last_failure_at = now
                self._consecutive_failures += 1
                self._transition(CircuitState.OPEN)
                return
            if self._state is not CircuitState.CLOSED:
                # Another caller already opened the breaker.
                return
            self._consecutive_failures += 1
            self._last_failure_at = now
            if self._consecutive_failures >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)

    async def _on_neutral(self, is_trial: bool) -> None:
        if not is_trial:
            return
        async with self._lock:
            # The trial proved nothing; let the next caller try again.
            self._trial_in_flight = False

    def _remaining_open_time(self) -> float:
        if self._last_failure_at is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_at
        return max(0.0, self.config.reset_timeout - elapsed)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        old_state, self._state = self._state, new_state
        if new_state is CircuitState.OPEN:
            logger.warning(
                "Circuit %r %s -> OPEN after %d consecutive failures",
                self.key,
                old_state.value,
                self._consecutive_failures,
            )
        else:
            logger.info(
                "Circuit %r %s -> %s", self.key, old_state.value, new_state.value
            )


class CircuitBreakerRegistry:
    """Arena of breakers keyed by dependency identifier.

    Breakers are created lazily on first use with the default config, or
    with a per-key override registered through :meth:`configure`.
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._overrides: dict[str, CircuitBreakerConfig] = {}
        self._breakers: dict[str, CircuitBreaker] = {}

    def configure(self, key: str, config: CircuitBreakerConfig) -> None:
        """Use *config* for *key* (must be called before first use)."""
        if key in self._breakers:
            raise ValueError(f"Circuit breaker {key!r} already in use")
        self._overrides[key] = config

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                key,
                self._overrides.get(key, self._default_config),
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker

    async def execute(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.get(key).execute(operation)

    def snapshot(self) -> dict[str, CircuitBreakerState]:
        return {key: b.state_snapshot() for key, b in self._breakers.items()}
