"""DeadLetterMonitor — reactive background worker for dead-letter occupancy."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, cast

from .correlation import get_correlation_id
from .instrumentation import MONITOR_OPERATION, get_hook_registry
from .ports.alerting import DeadLetterAlert, IAlertSink
from .ports.background_worker import IBackgroundWorker

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .dead_letter import DeadLetterManager
    from .instrumentation import HookRegistry

logger = logging.getLogger("resilient_messaging.monitor")


class LoggingAlertSink(IAlertSink):
    """Default sink: log the alert at ERROR level."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    async def alert(self, alert: DeadLetterAlert) -> None:
        self._log.error(
            "Dead-letter occupancy %d exceeds threshold %d on %r",
            alert.occupancy,
            alert.threshold,
            alert.destination,
        )


class DeadLetterMonitor(IBackgroundWorker):
    """Polls dead-letter occupancy and alerts when it exceeds ``threshold``.

    Uses trigger + polling fallback. Call :meth:`trigger` to check
    immediately (e.g. right after archiving); otherwise runs every
    ``poll_interval`` seconds.

    An alert fires once when occupancy rises above the threshold and is
    re-armed only after occupancy falls back to or below it.

    Implements ``IBackgroundWorker`` (``start`` / ``stop``).
    """

    def __init__(
        self,
        manager: DeadLetterManager,
        threshold: int,
        poll_interval: float = 60.0,
        sinks: Sequence[IAlertSink] | None = None,
        clock: Callable[[], datetime] | None = None,
        hooks: HookRegistry | None = None,
    ) -> None:
        self._manager = manager
        self._hooks = hooks
        self._threshold = threshold
        self._poll_interval = poll_interval
        self._sinks = list(sinks) if sinks is not None else [LoggingAlertSink()]
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._alerting = False
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._trigger = asyncio.Event()

    @property
    def alerting(self) -> bool:
        """True while occupancy is above the threshold."""
        return self._alerting

    def trigger(self) -> None:
        """Wake the worker immediately."""
        self._trigger.set()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "DeadLetterMonitor started (threshold=%d, poll_interval=%.1fs)",
            self._threshold,
            self._poll_interval,
        )

    async def stop(self) -> None:
        self._running = False
        self._trigger.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._task, timeout=5.0)
            self._task = None
        logger.info("DeadLetterMonitor stopped")

    async def run_once(self) -> int:
        """Execute a single check (useful in tests); return the occupancy."""
        return await self._check()

    async def _run_loop(self) -> None:
        while self._running:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._trigger.wait(), timeout=self._poll_interval
                )
            self._trigger.clear()
            try:
                await self._check()
            except Exception:
                logger.exception("DeadLetterMonitor error")

    async def _check(self) -> int:
        registry = self._hooks or get_hook_registry()
        occupancy = cast(
            "int",
            await registry.execute_all(
                MONITOR_OPERATION,
                {
                    "dead_letter.threshold": self._threshold,
                    "correlation_id": get_correlation_id(),
                },
                self._manager.occupancy_count,
            ),
        )
        if occupancy > self._threshold:
            if not self._alerting:
                self._alerting = True
                await self._raise_alert(occupancy)
        elif self._alerting:
            self._alerting = False
            logger.info(
                "Dead-letter occupancy back to %d (threshold %d)",
                occupancy,
                self._threshold,
            )
        return occupancy

    async def _raise_alert(self, occupancy: int) -> None:
        alert = DeadLetterAlert(
            occupancy=occupancy,
            threshold=self._threshold,
            raised_at=self._clock(),
            destination=self._manager.destination,
        )
        for sink in self._sinks:
            try:
                await sink.alert(alert)
            except Exception:
                logger.exception("Alert sink %s failed", type(sink).__name__)
