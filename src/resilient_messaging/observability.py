"""Metrics and structured logging hooks (Prometheus via the [prometheus] extra).

``MetricsHook`` emits:
  - ``resilient_messages_total{operation, outcome}``
  - ``resilient_message_duration_seconds{operation, outcome}``
  - ``resilient_dead_letter_occupancy`` (from ``dead_letter.monitor``)

Install with :func:`install_observability_hooks`.
"""

from __future__ import annotations

import json
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Any

from .instrumentation import MONITOR_OPERATION, OPERATIONS, get_hook_registry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .instrumentation import HookRegistry

_logger = logging.getLogger("resilient_messaging.observability")

DEFAULT_OPERATIONS: list[str] = list(OPERATIONS)


def _outcome_of(result: Any) -> str:
    if isinstance(result, Enum):
        return str(result.value).lower()
    return "success"


class MetricsHook:
    """Records counts and durations per operation and outcome.

    A pass-through when ``prometheus_client`` is not installed.
    """

    def __init__(self, registry: Any = None) -> None:
        self._histogram: Any = None
        self._counter: Any = None
        self._occupancy: Any = None
        try:
            from prometheus_client import REGISTRY, Counter, Gauge, Histogram
        except ImportError:
            _logger.debug("prometheus_client not installed; metrics disabled")
            return
        registry = registry if registry is not None else REGISTRY
        self._histogram = Histogram(
            "resilient_message_duration_seconds",
            "Routing duration",
            ["operation", "outcome"],
            registry=registry,
        )
        self._counter = Counter(
            "resilient_messages",
            "Routed messages",
            ["operation", "outcome"],
            registry=registry,
        )
        self._occupancy = Gauge(
            "resilient_dead_letter_occupancy",
            "Unreplayed dead-letter records",
            registry=registry,
        )

    @property
    def enabled(self) -> bool:
        return self._counter is not None

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],  # noqa: ARG002
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        if not self.enabled:
            return await next_handler()
        start = time.monotonic()
        outcome = "error"
        try:
            result = await next_handler()
            outcome = _outcome_of(result)
            if operation == MONITOR_OPERATION and isinstance(result, int):
                self._occupancy.set(result)
            return result
        finally:
            try:
                labels = {"operation": operation, "outcome": outcome}
                self._histogram.labels(**labels).observe(time.monotonic() - start)
                self._counter.labels(**labels).inc()
            except Exception:  # noqa: BLE001
                _logger.debug("Failed to emit metrics labels", exc_info=True)


class StructuredLoggingHook:
    """Emits one JSON log entry per operation with outcome and duration."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or _logger

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        start = time.monotonic()
        outcome = "error"
        try:
            result = await next_handler()
            outcome = _outcome_of(result)
            return result
        finally:
            try:
                entry = {
                    "operation": operation,
                    "outcome": outcome,
                    "duration_ms": round((time.monotonic() - start) * 1000, 2),
                    **{k: v for k, v in attributes.items() if v is not None},
                }
                self._log.info(json.dumps(entry, default=str))
            except Exception:  # noqa: BLE001
                _logger.debug("Failed to emit structured log entry", exc_info=True)


def install_observability_hooks(
    *,
    registry: HookRegistry | None = None,
    metrics: MetricsHook | None = None,
    structured_logging: bool = True,
    operations: list[str] | None = None,
    priority: int = -100,
) -> None:
    """Register metrics (and optionally structured logging) hooks."""
    hooks = registry or get_hook_registry()
    ops = operations or DEFAULT_OPERATIONS
    hooks.register(metrics or MetricsHook(), priority=priority, operations=ops)
    if structured_logging:
        hooks.register(StructuredLoggingHook(), priority=priority + 1, operations=ops)
