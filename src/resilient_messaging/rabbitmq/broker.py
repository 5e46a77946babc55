"""RabbitMQBroker — IBroker over durable queues on the default exchange."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPConnectionError, AMQPError

from ..exceptions import MessagingConnectionError, PublishError
from ..message import Delivery, Message
from ..topology import DestinationTopology

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from aio_pika.abc import AbstractIncomingMessage

    from ..retry import RetryPolicy
    from .connection import RabbitMQConnectionManager

logger = logging.getLogger("resilient_messaging.rabbitmq")


def _header_value(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def to_amqp_message(
    message: Message, *, expiration: float | None = None
) -> aio_pika.Message:
    """Payload becomes the body, attributes become headers."""
    return aio_pika.Message(
        body=message.payload,
        headers=dict(message.attributes),
        message_id=message.message_id,
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        expiration=expiration,
    )


def from_amqp_message(raw: AbstractIncomingMessage) -> Message:
    headers = raw.headers or {}
    attributes = {
        str(k): _header_value(v) for k, v in headers.items() if v is not None
    }
    if raw.message_id:
        return Message(
            message_id=raw.message_id, payload=raw.body, attributes=attributes
        )
    return Message(payload=raw.body, attributes=attributes)


class RabbitMQBroker:
    """RabbitMQ adapter implementing ``IBroker``.

    Every destination is a durable queue named ``<queue_prefix>.<destination>``
    published to through the default exchange. Retry queues have no
    consumers of their own: :meth:`declare_topology` dead-letters expired
    messages back into the main queue, so workers only consume main.

    A retry publish carries its delay as the message ``expiration``. With
    fixed levels each retry queue also has an ``x-message-ttl`` that bounds
    it from above: the largest jittered delay of that level. A circuit-open
    delay longer than the level TTL is therefore cut to the TTL.

    With ``per_message_delay`` one retry queue serves all levels and only the
    message ``expiration`` applies. RabbitMQ expires messages only at the
    head of a queue, so a message with a short delay waits behind an
    earlier one with a longer delay.
    """

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        *,
        queue_prefix: str = "resilient",
        topology: DestinationTopology | None = None,
    ) -> None:
        self._connection = connection
        self._queue_prefix = queue_prefix
        self._topology = topology or DestinationTopology()

    def queue_name(self, destination: str) -> str:
        return f"{self._queue_prefix}.{destination}"

    def consume_destinations(
        self, topology: DestinationTopology, max_retries: int
    ) -> list[str]:
        """Only main: retry queues expire back into it."""
        return [topology.main]

    async def declare_topology(self, policy: RetryPolicy) -> None:
        """Declare main, retry and dead-letter queues for *policy*."""
        await self._connection.connect()
        channel = self._connection.channel
        main_queue = self.queue_name(self._topology.main)
        await channel.declare_queue(main_queue, durable=True)
        await channel.declare_queue(
            self.queue_name(self._topology.dead_letter), durable=True
        )
        back_to_main = {
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": main_queue,
        }
        if self._topology.per_message_delay:
            await channel.declare_queue(
                self.queue_name(self._topology.retry_prefix),
                durable=True,
                arguments=back_to_main,
            )
            return
        for level in range(policy.max_retries):
            # Upper bound only; each message expires after its own delay.
            base = min(
                policy.initial_interval * policy.multiplier**level,
                policy.max_interval,
            )
            ttl = min(base * (1 + policy.jitter_factor), policy.max_interval)
            await channel.declare_queue(
                self.queue_name(self._topology.retry_destination(level)),
                durable=True,
                arguments={**back_to_main, "x-message-ttl": round(ttl * 1000)},
            )
        logger.info(
            "Declared RabbitMQ topology with %d retry level(s)", policy.max_retries
        )

    async def publish(
        self,
        destination: str,
        message: Message,
        *,
        delay: float | None = None,
    ) -> None:
        await self._connection.connect()
        try:
            await self._connection.channel.default_exchange.publish(
                to_amqp_message(message, expiration=delay or None),
                routing_key=self.queue_name(destination),
            )
        except (AMQPConnectionError, ConnectionError, OSError) as e:
            raise MessagingConnectionError(str(e)) from e
        except AMQPError as e:
            raise PublishError(str(e), destination=destination) from e

    async def consume(self, destination: str) -> AsyncIterator[Delivery]:
        await self._connection.connect()
        try:
            queue = await self._connection.channel.get_queue(
                self.queue_name(destination)
            )
        except AMQPConnectionError as e:
            raise MessagingConnectionError(str(e)) from e
        async with queue.iterator() as incoming:
            async for raw in incoming:
                yield Delivery(from_amqp_message(raw), raw, destination)

    async def ack(self, ack_handle: Any) -> None:
        await ack_handle.ack()

    async def nack(self, ack_handle: Any, requeue: bool = True) -> None:
        await ack_handle.nack(requeue=requeue)

    async def health_check(self) -> bool:
        return await self._connection.health_check()
