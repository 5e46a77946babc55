"""Unit tests for RabbitMQBroker with a mocked connection (no real broker)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

pytest.importorskip("aio_pika")

import aio_pika  # noqa: E402
from aio_pika.exceptions import AMQPConnectionError, AMQPError  # noqa: E402

from resilient_messaging.bootstrap import bootstrap_resilience  # noqa: E402
from resilient_messaging.config import ResilienceConfig, WorkerConfig  # noqa: E402
from resilient_messaging.dead_letter import DeadLetterManager  # noqa: E402
from resilient_messaging.exceptions import (  # noqa: E402
    MessagingConnectionError,
    PublishError,
    TransientError,
)
from resilient_messaging.instrumentation import HookRegistry  # noqa: E402
from resilient_messaging.memory import InMemoryDeadLetterStore  # noqa: E402
from resilient_messaging.message import Delivery, Message  # noqa: E402
from resilient_messaging.rabbitmq.broker import (  # noqa: E402
    RabbitMQBroker,
    from_amqp_message,
    to_amqp_message,
)
from resilient_messaging.retry import RetryPolicy, RetryScheduler  # noqa: E402
from resilient_messaging.router import MessageRouter, Outcome  # noqa: E402
from resilient_messaging.topology import DestinationTopology  # noqa: E402

from support import wait_until  # noqa: E402


class FakeQueueIterator:
    def __init__(self, messages: list[MagicMock]) -> None:
        self._messages = list(messages)

    async def __aenter__(self) -> FakeQueueIterator:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    def __aiter__(self) -> FakeQueueIterator:
        return self

    async def __anext__(self) -> MagicMock:
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


def _incoming(body: bytes, headers: dict | None, message_id: str | None) -> MagicMock:
    raw = MagicMock()
    raw.body = body
    raw.headers = headers
    raw.message_id = message_id
    raw.ack = AsyncMock()
    raw.nack = AsyncMock()
    return raw


@pytest.fixture
def mock_connection() -> MagicMock:
    conn = MagicMock()
    conn.connect = AsyncMock()
    conn.health_check = AsyncMock(return_value=True)
    mock_channel = MagicMock()
    mock_channel.default_exchange.publish = AsyncMock()
    mock_channel.declare_queue = AsyncMock()
    mock_channel.get_queue = AsyncMock()
    conn.channel = mock_channel
    return conn


@pytest.fixture
def rabbit(mock_connection: MagicMock) -> RabbitMQBroker:
    return RabbitMQBroker(mock_connection, queue_prefix="orders")


def test_to_amqp_message_maps_payload_and_attributes() -> None:
    message = Message(payload=b"body", attributes={"x-retry-count": "2"})
    amqp = to_amqp_message(message)
    assert amqp.body == b"body"
    assert amqp.headers == {"x-retry-count": "2"}
    assert amqp.message_id == message.message_id
    assert amqp.delivery_mode == aio_pika.DeliveryMode.PERSISTENT


def test_from_amqp_message_stringifies_headers() -> None:
    raw = _incoming(b"p", {"x-retry-count": 3, "tenant": b"acme", "gone": None}, "m-1")
    message = from_amqp_message(raw)
    assert message.message_id == "m-1"
    assert message.payload == b"p"
    assert message.attributes == {"x-retry-count": "3", "tenant": "acme"}


def test_from_amqp_message_without_id_gets_fresh_id() -> None:
    message = from_amqp_message(_incoming(b"p", None, None))
    assert message.message_id
    assert message.attributes == {}


@pytest.mark.asyncio
async def test_publish_routes_to_prefixed_queue(
    rabbit: RabbitMQBroker, mock_connection: MagicMock
) -> None:
    await rabbit.publish("retry.1", Message(payload=b"x"), delay=2.0)

    mock_connection.connect.assert_called_once()
    exchange = mock_connection.channel.default_exchange
    exchange.publish.assert_called_once()
    call = exchange.publish.call_args
    assert call.kwargs["routing_key"] == "orders.retry.1"
    assert call.args[0].body == b"x"
    assert call.args[0].expiration == aio_pika.Message(b"", expiration=2.0).expiration


@pytest.mark.asyncio
async def test_publish_without_delay_has_no_expiration(
    rabbit: RabbitMQBroker, mock_connection: MagicMock
) -> None:
    await rabbit.publish("dead-letter", Message())

    amqp = mock_connection.channel.default_exchange.publish.call_args.args[0]
    assert amqp.expiration is None


@pytest.mark.asyncio
async def test_publish_sets_expiration_with_per_message_delay(
    mock_connection: MagicMock,
) -> None:
    rabbit = RabbitMQBroker(
        mock_connection, topology=DestinationTopology(per_message_delay=True)
    )
    await rabbit.publish("retry", Message(), delay=1.5)

    amqp = mock_connection.channel.default_exchange.publish.call_args.args[0]
    assert amqp.expiration == aio_pika.Message(b"", expiration=1.5).expiration


@pytest.mark.asyncio
async def test_publish_connection_failure(
    rabbit: RabbitMQBroker, mock_connection: MagicMock
) -> None:
    mock_connection.channel.default_exchange.publish.side_effect = AMQPConnectionError(
        "down"
    )
    with pytest.raises(MessagingConnectionError):
        await rabbit.publish("main", Message())


@pytest.mark.asyncio
async def test_publish_rejected_by_broker(
    rabbit: RabbitMQBroker, mock_connection: MagicMock
) -> None:
    mock_connection.channel.default_exchange.publish.side_effect = AMQPError("nope")
    with pytest.raises(PublishError) as exc_info:
        await rabbit.publish("dead-letter", Message())
    assert exc_info.value.destination == "dead-letter"
    assert exc_info.value.__cause__ is not None


@pytest.mark.asyncio
async def test_declare_topology_bounds_each_level_by_its_largest_delay(
    rabbit: RabbitMQBroker, mock_connection: MagicMock
) -> None:
    policy = RetryPolicy(
        max_retries=3,
        initial_interval=1.0,
        multiplier=2.0,
        max_interval=3.0,
        jitter_factor=0.5,
    )
    await rabbit.declare_topology(policy)

    calls = mock_connection.channel.declare_queue.call_args_list
    names = [c.args[0] for c in calls]
    assert names == [
        "orders.main",
        "orders.dead-letter",
        "orders.retry.0",
        "orders.retry.1",
        "orders.retry.2",
    ]
    ttls = [c.kwargs["arguments"]["x-message-ttl"] for c in calls[2:]]
    assert ttls == [1500, 3000, 3000]
    for c in calls[2:]:
        assert c.kwargs["arguments"]["x-dead-letter-exchange"] == ""
        assert c.kwargs["arguments"]["x-dead-letter-routing-key"] == "orders.main"


@pytest.mark.asyncio
async def test_declare_topology_single_retry_queue_with_per_message_delay(
    mock_connection: MagicMock,
) -> None:
    rabbit = RabbitMQBroker(
        mock_connection, topology=DestinationTopology(per_message_delay=True)
    )
    await rabbit.declare_topology(RetryPolicy(max_retries=5))

    names = [c.args[0] for c in mock_connection.channel.declare_queue.call_args_list]
    assert names == ["resilient.main", "resilient.dead-letter", "resilient.retry"]


@pytest.mark.asyncio
async def test_consume_yields_deliveries_and_acks_through_handle(
    rabbit: RabbitMQBroker, mock_connection: MagicMock
) -> None:
    raw = _incoming(b"payload", {"x-retry-count": "1"}, "m-9")
    queue = MagicMock()
    queue.iterator = MagicMock(return_value=FakeQueueIterator([raw]))
    mock_connection.channel.get_queue.return_value = queue

    deliveries = [d async for d in rabbit.consume("retry.0")]

    mock_connection.channel.get_queue.assert_called_once_with("orders.retry.0")
    [delivery] = deliveries
    assert delivery.message.message_id == "m-9"
    assert delivery.destination == "retry.0"
    await rabbit.ack(delivery.ack_handle)
    raw.ack.assert_awaited_once()
    await rabbit.nack(delivery.ack_handle, requeue=False)
    raw.nack.assert_awaited_once_with(requeue=False)


@pytest.mark.asyncio
async def test_health_check_delegates_to_connection(
    rabbit: RabbitMQBroker, mock_connection: MagicMock
) -> None:
    mock_connection.health_check.return_value = False
    assert await rabbit.health_check() is False
    mock_connection.health_check.assert_called_once()


def test_only_main_is_consumable(rabbit: RabbitMQBroker) -> None:
    topology = DestinationTopology()
    assert rabbit.consume_destinations(topology, 5) == ["main"]


async def times_out(payload: bytes) -> None:
    raise TransientError("upstream timeout", error_class="timeout")


@pytest.mark.asyncio
async def test_router_retry_expires_from_level_queue_back_to_main(
    mock_connection: MagicMock,
) -> None:
    rabbit = RabbitMQBroker(mock_connection, queue_prefix="q")
    policy = RetryPolicy(
        max_retries=3,
        initial_interval=1.0,
        multiplier=2.0,
        max_interval=10.0,
        jitter_factor=0.5,
    )
    router = MessageRouter(
        rabbit,
        DeadLetterManager(rabbit, InMemoryDeadLetterStore()),
        policy,
        scheduler=RetryScheduler(rng=lambda: 0.75),
        hooks=HookRegistry(),
    )
    raw = _incoming(b"order", {}, "m-1")

    outcome = await router.handle_delivery(
        Delivery(from_amqp_message(raw), raw, "main"), times_out
    )

    assert outcome is Outcome.RETRIED
    raw.ack.assert_awaited_once()
    publish = mock_connection.channel.default_exchange.publish.call_args
    assert publish.kwargs["routing_key"] == "q.retry.0"
    retried = publish.args[0]
    assert retried.headers["x-retry-count"] == "1"
    assert retried.expiration == aio_pika.Message(b"", expiration=1.25).expiration

    await rabbit.declare_topology(policy)
    declared = {
        c.args[0]: c.kwargs.get("arguments")
        for c in mock_connection.channel.declare_queue.call_args_list
    }
    level_queue = declared["q.retry.0"]
    assert level_queue["x-message-ttl"] == 1500
    assert level_queue["x-message-ttl"] >= 1250
    assert level_queue["x-dead-letter-exchange"] == ""
    assert level_queue["x-dead-letter-routing-key"] == "q.main"


@pytest.mark.asyncio
async def test_bootstrapped_worker_never_consumes_retry_queues(
    mock_connection: MagicMock,
) -> None:
    rabbit = RabbitMQBroker(mock_connection, queue_prefix="q")
    raw = _incoming(b"order", {}, "m-2")
    queue = MagicMock()
    queue.iterator = MagicMock(return_value=FakeQueueIterator([raw]))
    mock_connection.channel.get_queue.return_value = queue
    resilience = bootstrap_resilience(
        broker=rabbit,
        store=InMemoryDeadLetterStore(),
        config=ResilienceConfig(worker=WorkerConfig(concurrency=1, grace_period=1.0)),
        hooks=HookRegistry(),
    )
    worker = resilience.worker(times_out)
    assert worker.destinations == ["main"]

    await worker.start()
    await wait_until(lambda: worker.stats[Outcome.RETRIED] == 1)
    await worker.stop()

    consumed = [c.args[0] for c in mock_connection.channel.get_queue.call_args_list]
    assert consumed == ["q.main"]
    raw.ack.assert_awaited_once()
    publish = mock_connection.channel.default_exchange.publish.call_args
    assert publish.kwargs["routing_key"] == "q.retry.0"
