"""ConsumerWorker — concurrent worker pool feeding deliveries to the router."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections import Counter
from typing import TYPE_CHECKING, Any

from .exceptions import MessagingConnectionError
from .ports.background_worker import IBackgroundWorker

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

    from .message import Delivery
    from .ports.broker import IBroker
    from .router import MessageRouter, Outcome

logger = logging.getLogger("resilient_messaging.worker")


class ConsumerWorker(IBackgroundWorker):
    """Pulls deliveries from the broker's consumable destinations in parallel.

    Unless ``destinations`` is given, the broker decides which destinations
    are consumed: main and every retry level for brokers that only record
    delays, main alone for brokers whose retry queues expire back to main.
    ``concurrency`` tasks are started per destination. Each task processes
    one delivery to completion before pulling the next. :meth:`stop` stops
    pulling immediately, lets in-flight deliveries finish within
    ``grace_period`` seconds, then cancels the rest; a cancelled delivery is
    never acknowledged, so the broker redelivers it.

    A :class:`MessagingConnectionError` stops the worker and is re-raised by
    :meth:`run_until_stopped`.

    Implements ``IBackgroundWorker`` (``start`` / ``stop``).
    """

    def __init__(
        self,
        broker: IBroker,
        router: MessageRouter,
        handler: Callable[[bytes], Awaitable[Any]],
        *,
        concurrency: int = 1,
        destinations: Sequence[str] | None = None,
        dependency: str | None = None,
        grace_period: float = 30.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._broker = broker
        self._router = router
        self._handler = handler
        self._concurrency = concurrency
        self._destinations = list(
            destinations
            if destinations is not None
            else broker.consume_destinations(
                router.topology, router.policy.max_retries
            )
        )
        self._dependency = dependency
        self._grace_period = grace_period
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._stop_task: asyncio.Task[None] | None = None
        self._in_flight = 0
        self._failure: BaseException | None = None
        self.stats: Counter[Outcome] = Counter()

    @property
    def destinations(self) -> list[str]:
        return list(self._destinations)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        for destination in self._destinations:
            for slot in range(self._concurrency):
                self._tasks.append(
                    asyncio.create_task(
                        self._worker_loop(destination),
                        name=f"consumer:{destination}:{slot}",
                    )
                )
        logger.info(
            "ConsumerWorker started (%d task(s) over %s)",
            len(self._tasks),
            ", ".join(self._destinations),
        )

    async def stop(self, grace_period: float | None = None) -> None:
        """Stop pulling; wait for in-flight deliveries, then abandon them."""
        if not self._tasks:
            return
        self._stopping.set()
        grace = self._grace_period if grace_period is None else grace_period
        _, pending = await asyncio.wait(self._tasks, timeout=grace)
        if pending:
            logger.warning(
                "Abandoning %d in-flight delivery task(s) after %.1fs; "
                "originals stay unacknowledged",
                len(pending),
                grace,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.info("ConsumerWorker stopped (%s)", dict(self.stats))

    async def run_until_stopped(self) -> None:
        """Block until the worker stops; re-raise a fatal broker failure."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._failure is not None:
            raise self._failure

    def install_signal_handlers(
        self, signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM)
    ) -> None:
        """Stop gracefully on *signals* (Unix event loops only)."""
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.add_signal_handler(sig, self._on_signal)

    def _on_signal(self) -> None:
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.create_task(self.stop(), name="consumer:stop")

    async def _worker_loop(self, destination: str) -> None:
        deliveries = self._broker.consume(destination)
        try:
            while not self._stopping.is_set():
                delivery = await self._next_delivery(deliveries)
                if delivery is None:
                    break
                if self._stopping.is_set():
                    # Pulled while stopping: hand it straight back.
                    await self._broker.nack(delivery.ack_handle, requeue=True)
                    break
                await self._process(delivery)
        except MessagingConnectionError as e:
            logger.exception("Broker connection lost while consuming %s", destination)
            self._failure = e
            self._stopping.set()
        finally:
            with contextlib.suppress(Exception):
                await deliveries.aclose()  # type: ignore[attr-defined]

    async def _next_delivery(
        self, deliveries: AsyncIterator[Delivery]
    ) -> Delivery | None:
        async def _pull() -> Delivery:
            return await deliveries.__anext__()

        pull = asyncio.create_task(_pull())
        stop = asyncio.create_task(self._stopping.wait())
        try:
            await asyncio.wait({pull, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not pull.done():
                pull.cancel()
        with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
            return await pull
        return None

    async def _process(self, delivery: Delivery) -> None:
        self._in_flight += 1
        try:
            outcome = await self._router.handle_delivery(
                delivery, self._handler, dependency=self._dependency
            )
            self.stats[outcome] += 1
        except MessagingConnectionError:
            raise
        except asyncio.CancelledError:
            logger.warning(
                "Abandoned message %s mid-flight; left unacknowledged",
                delivery.message.message_id,
            )
            raise
        except Exception:
            logger.exception(
                "Unexpected error routing message %s; left unacknowledged",
                delivery.message.message_id,
            )
        finally:
            self._in_flight -= 1
