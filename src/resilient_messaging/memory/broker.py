"""InMemoryBroker — IBroker with ack tracking and assertion helpers for tests."""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from typing import TYPE_CHECKING, Any

from ..exceptions import MessagingConnectionError, PublishError
from ..message import Delivery, Message

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ..topology import DestinationTopology


class _AckHandle:
    __slots__ = ("delivery_tag", "destination", "message")

    def __init__(self, delivery_tag: int, destination: str, message: Message) -> None:
        self.delivery_tag = delivery_tag
        self.destination = destination
        self.message = message


class _Destination:
    def __init__(self) -> None:
        self.messages: deque[Message] = deque()
        self.ready = asyncio.Event()

    def put(self, message: Message) -> None:
        self.messages.append(message)
        self.ready.set()


class InMemoryBroker:
    """In-memory broker with per-destination FIFO queues.

    Delivered-but-unacknowledged messages are tracked until ``ack`` or
    ``nack``; ``nack(requeue=True)`` puts them back at the tail. Delays are
    recorded but only honoured when ``honour_delays`` is True, so tests run
    without sleeping. ``get_published`` and ``assert_published`` support
    test assertions; ``fail_publishes_to`` simulates an unreachable
    destination.
    """

    def __init__(self, *, honour_delays: bool = False) -> None:
        self._honour_delays = honour_delays
        self._destinations: dict[str, _Destination] = {}
        self._published: list[tuple[str, Message, float | None]] = []
        self._unacked: dict[int, _AckHandle] = {}
        self._acked: list[_AckHandle] = []
        self._failing: set[str] = set()
        self._tags = itertools.count(1)
        self._timers: set[asyncio.TimerHandle] = set()
        self._closed = False

    def consume_destinations(
        self, topology: DestinationTopology, max_retries: int
    ) -> list[str]:
        """Main and every retry destination; delays are applied on publish."""
        return topology.consume_destinations(max_retries)

    def _destination(self, name: str) -> _Destination:
        return self._destinations.setdefault(name, _Destination())

    async def publish(
        self,
        destination: str,
        message: Message,
        *,
        delay: float | None = None,
    ) -> None:
        if self._closed:
            raise MessagingConnectionError("Broker is closed")
        if destination in self._failing:
            raise PublishError(
                f"Destination {destination!r} unavailable", destination=destination
            )
        self._published.append((destination, message, delay))
        target = self._destination(destination)
        if self._honour_delays and delay:
            loop = asyncio.get_running_loop()
            handle: asyncio.TimerHandle

            def _deliver() -> None:
                self._timers.discard(handle)
                target.put(message)

            handle = loop.call_later(delay, _deliver)
            self._timers.add(handle)
        else:
            target.put(message)

    async def consume(self, destination: str) -> AsyncIterator[Delivery]:
        target = self._destination(destination)
        while not self._closed:
            if not target.messages:
                target.ready.clear()
                await target.ready.wait()
                continue
            message = target.messages.popleft()
            handle = _AckHandle(next(self._tags), destination, message)
            self._unacked[handle.delivery_tag] = handle
            yield Delivery(message, handle, destination)

    async def ack(self, ack_handle: Any) -> None:
        handle = self._unacked.pop(ack_handle.delivery_tag, None)
        if handle is not None:
            self._acked.append(handle)

    async def nack(self, ack_handle: Any, requeue: bool = True) -> None:
        handle = self._unacked.pop(ack_handle.delivery_tag, None)
        if handle is not None and requeue:
            self._destination(handle.destination).put(handle.message)

    async def close(self) -> None:
        """Stop all consumers and return unacknowledged messages to their queues."""
        self._closed = True
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        for handle in list(self._unacked.values()):
            self._destination(handle.destination).messages.append(handle.message)
        self._unacked.clear()
        for target in self._destinations.values():
            target.ready.set()

    # -- test helpers -------------------------------------------------------

    def fail_publishes_to(self, destination: str, failing: bool = True) -> None:
        """Make publishes to *destination* raise :class:`PublishError`."""
        if failing:
            self._failing.add(destination)
        else:
            self._failing.discard(destination)

    def get_published(
        self, destination: str | None = None
    ) -> list[tuple[str, Message, float | None]]:
        """Return all (destination, message, delay) published so far, in order."""
        if destination is None:
            return list(self._published)
        return [p for p in self._published if p[0] == destination]

    def assert_published(self, destination: str, count: int = 1) -> None:
        """Assert that exactly *count* messages were published to *destination*."""
        published = self.get_published(destination)
        assert len(published) == count, (
            f"Expected {count} message(s) published to {destination!r}, "
            f"got {len(published)}. Published to: "
            f"{[d for d, _, _ in self._published]}"
        )

    def pending(self, destination: str) -> list[Message]:
        """Messages queued on *destination* and not yet delivered."""
        target = self._destinations.get(destination)
        return list(target.messages) if target else []

    def unacked(self, destination: str | None = None) -> list[Message]:
        """Messages delivered but neither acked nor nacked."""
        return [
            h.message
            for h in self._unacked.values()
            if destination is None or h.destination == destination
        ]

    @property
    def acked_count(self) -> int:
        return len(self._acked)
