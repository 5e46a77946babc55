"""IBroker — the minimal broker surface the resilience core depends on."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ..message import Delivery, Message
    from ..topology import DestinationTopology


@runtime_checkable
class IBroker(Protocol):
    """
    Port for a message broker (RabbitMQ, SQS, in-memory, …).

    Infrastructure packages provide concrete adapters. Destinations are
    plain strings (``main``, ``retry.<level>``, ``dead-letter``).
    """

    async def publish(
        self,
        destination: str,
        message: Message,
        *,
        delay: float | None = None,
    ) -> None:
        """
        Publish *message* to *destination*.

        Args:
            destination: Destination identifier.
            message: Message to hand over; ownership moves to the broker.
            delay: Optional delay in seconds before the message becomes
                visible, for brokers that support per-message delay.

        Raises:
            PublishError: The broker did not accept the message.
        """
        ...

    def consume_destinations(
        self, topology: DestinationTopology, max_retries: int
    ) -> list[str]:
        """
        Destinations a worker should pull from, main first.

        Brokers that delay retries themselves and route expired messages
        back to main return only the main destination.
        """
        ...

    def consume(self, destination: str) -> AsyncIterator[Delivery]:
        """
        Return an infinite async iterator of deliveries from *destination*.

        The iterator is not restartable once closed.
        """
        ...

    async def ack(self, ack_handle: Any) -> None:
        """Acknowledge a delivery; the broker forgets the message."""
        ...

    async def nack(self, ack_handle: Any, requeue: bool = True) -> None:
        """Reject a delivery, optionally returning it to its destination."""
        ...
