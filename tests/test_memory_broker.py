"""Tests for InMemoryBroker."""

from __future__ import annotations

import asyncio

import pytest

from resilient_messaging.exceptions import MessagingConnectionError, PublishError
from resilient_messaging.memory import InMemoryBroker
from resilient_messaging.message import Message
from resilient_messaging.ports.broker import IBroker

from support import pull, wait_until


def test_satisfies_broker_protocol() -> None:
    assert isinstance(InMemoryBroker(), IBroker)


@pytest.mark.asyncio
async def test_fifo_per_destination(broker: InMemoryBroker) -> None:
    first, second = Message(payload=b"1"), Message(payload=b"2")
    await broker.publish("main", first)
    await broker.publish("main", second)
    other = Message(payload=b"x")
    await broker.publish("other", other)

    assert (await pull(broker, "main")).message == first
    assert (await pull(broker, "main")).message == second
    assert broker.pending("other") == [other]


@pytest.mark.asyncio
async def test_ack_and_nack(broker: InMemoryBroker) -> None:
    message = Message()
    await broker.publish("main", message)

    delivery = await pull(broker, "main")
    assert delivery.destination == "main"
    assert broker.unacked("main") == [message]

    await broker.nack(delivery.ack_handle, requeue=True)
    assert broker.unacked() == []
    assert broker.pending("main") == [message]

    redelivered = await pull(broker, "main")
    await broker.ack(redelivered.ack_handle)
    assert broker.acked_count == 1
    assert broker.pending("main") == []


@pytest.mark.asyncio
async def test_nack_without_requeue_drops(broker: InMemoryBroker) -> None:
    await broker.publish("main", Message())
    delivery = await pull(broker, "main")
    await broker.nack(delivery.ack_handle, requeue=False)
    assert broker.pending("main") == []
    assert broker.unacked() == []


@pytest.mark.asyncio
async def test_consumer_waits_for_publish(broker: InMemoryBroker) -> None:
    waiting = asyncio.create_task(pull(broker, "main"))
    await asyncio.sleep(0)
    message = Message()
    await broker.publish("main", message)
    assert (await waiting).message == message


@pytest.mark.asyncio
async def test_records_delays_without_sleeping(broker: InMemoryBroker) -> None:
    message = Message()
    await broker.publish("retry.0", message, delay=30.0)

    assert broker.get_published("retry.0") == [("retry.0", message, 30.0)]
    assert broker.pending("retry.0") == [message]


@pytest.mark.asyncio
async def test_honours_delays_when_asked() -> None:
    broker = InMemoryBroker(honour_delays=True)
    message = Message()
    await broker.publish("retry.0", message, delay=0.02)

    assert broker.pending("retry.0") == []
    await wait_until(lambda: broker.pending("retry.0") == [message])


@pytest.mark.asyncio
async def test_failing_destination(broker: InMemoryBroker) -> None:
    broker.fail_publishes_to("dead-letter")
    with pytest.raises(PublishError) as exc_info:
        await broker.publish("dead-letter", Message())
    assert exc_info.value.destination == "dead-letter"
    assert broker.get_published() == []

    broker.fail_publishes_to("dead-letter", failing=False)
    await broker.publish("dead-letter", Message())
    broker.assert_published("dead-letter", 1)


@pytest.mark.asyncio
async def test_close_returns_unacked_and_rejects_publishes(
    broker: InMemoryBroker,
) -> None:
    message = Message()
    await broker.publish("main", message)
    await pull(broker, "main")

    await broker.close()

    assert broker.pending("main") == [message]
    assert broker.unacked() == []
    with pytest.raises(MessagingConnectionError):
        await broker.publish("main", Message())


@pytest.mark.asyncio
async def test_assert_published_reports_mismatch(broker: InMemoryBroker) -> None:
    await broker.publish("main", Message())
    with pytest.raises(AssertionError, match="Expected 2 message"):
        broker.assert_published("main", 2)
