"""MessageRouter — decide the fate of each inbound message.

For every delivery the router invokes the handler behind its circuit
breaker and then either acknowledges, republishes a stamped successor to a
retry destination, or archives to dead-letter. The original is only
acknowledged once its replacement is safely published or archived; on any
publish/archive failure it is nacked for redelivery instead.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from .circuit_breaker import CircuitBreakerRegistry
from .classification import ErrorCategory, ErrorClassifier
from .correlation import correlation_id_of, correlation_scope
from .exceptions import CircuitOpenError, DeadLetterError, PublishError
from .instrumentation import ROUTE_OPERATION, get_hook_registry
from .retry import RetryPolicy, RetryScheduler
from .topology import DestinationTopology
from .tracking import RETRY_DELAY_MS, DeliveryTracker
from .transformation import TransformationRegistry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .classification import Classification
    from .dead_letter import DeadLetterManager
    from .instrumentation import HookRegistry
    from .message import Delivery, Message
    from .ports.broker import IBroker
    from .tracking import RetryState

    Handler = Callable[[bytes], Awaitable[Any]]

logger = logging.getLogger("resilient_messaging.router")


class Outcome(str, Enum):
    """Result of routing one message."""

    ACKNOWLEDGED = "ACKNOWLEDGED"
    RETRIED = "RETRIED"
    DEAD_LETTERED = "DEAD_LETTERED"
    # Original left unacknowledged (nacked with requeue) for redelivery.
    DEFERRED = "DEFERRED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dependency_key(handler: Callable[..., Any]) -> str:
    """Default circuit-breaker key for *handler*."""
    return getattr(handler, "__qualname__", None) or type(handler).__name__


class MessageRouter:
    """Orchestrates handler invocation, retry, and dead-lettering.

    All routing decisions derive from the message's own attributes, the
    immutable :class:`RetryPolicy` and the breaker state; the router keeps
    no per-message state, so a redelivered message gets the same decision.
    """

    def __init__(
        self,
        broker: IBroker,
        dead_letters: DeadLetterManager,
        policy: RetryPolicy | None = None,
        *,
        tracker: DeliveryTracker | None = None,
        scheduler: RetryScheduler | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        classifier: ErrorClassifier | None = None,
        transformations: TransformationRegistry | None = None,
        topology: DestinationTopology | None = None,
        clock: Callable[[], datetime] | None = None,
        hooks: HookRegistry | None = None,
    ) -> None:
        self._broker = broker
        self._dead_letters = dead_letters
        self.policy = policy or RetryPolicy()
        self._tracker = tracker or DeliveryTracker()
        self._scheduler = scheduler or RetryScheduler()
        self._breakers = breakers or CircuitBreakerRegistry()
        self._classifier = classifier or ErrorClassifier()
        self._transformations = transformations or TransformationRegistry()
        self.topology = topology or DestinationTopology()
        self._clock = clock or _utcnow
        self._hooks = hooks

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    async def handle(
        self,
        message: Message,
        handler: Handler,
        ack_handle: Any = None,
        *,
        dependency: str | None = None,
        source_destination: str | None = None,
    ) -> Outcome:
        """Route *message* through *handler*.

        Args:
            message: Inbound message.
            handler: Async callable receiving the payload bytes.
            ack_handle: Broker handle of the delivery; when None nothing is
                acknowledged or nacked (useful for dry runs and tests).
            dependency: Circuit-breaker key; defaults to the handler's name.
            source_destination: Destination the message was pulled from.

        Raises:
            MessagingConnectionError: The broker connection was lost.
        """
        registry = self._hooks or get_hook_registry()
        correlation_id = correlation_id_of(message)
        attributes = {
            "message.id": message.message_id,
            "message.destination": source_destination,
            "correlation_id": correlation_id,
        }
        with correlation_scope(correlation_id):
            outcome: Outcome = await registry.execute_all(
                ROUTE_OPERATION,
                attributes,
                lambda: self._route(
                    message,
                    handler,
                    ack_handle,
                    dependency or dependency_key(handler),
                    source_destination,
                ),
            )
            return outcome

    async def handle_delivery(
        self,
        delivery: Delivery,
        handler: Handler,
        *,
        dependency: str | None = None,
    ) -> Outcome:
        return await self.handle(
            delivery.message,
            handler,
            delivery.ack_handle,
            dependency=dependency,
            source_destination=delivery.destination,
        )

    async def _route(
        self,
        message: Message,
        handler: Handler,
        ack_handle: Any,
        dependency: str,
        source_destination: str | None,
    ) -> Outcome:
        state = self._tracker.read(message)
        try:
            await self._breakers.execute(dependency, lambda: handler(message.payload))
        except Exception as error:
            return await self._on_failure(
                message, state, error, ack_handle, source_destination
            )
        await self._ack(ack_handle)
        logger.debug("Message %s acknowledged", message.message_id)
        return Outcome.ACKNOWLEDGED

    async def _on_failure(
        self,
        message: Message,
        state: RetryState,
        error: Exception,
        ack_handle: Any,
        source_destination: str | None,
    ) -> Outcome:
        classification = self._classifier.classify(error)

        if classification.category is ErrorCategory.CIRCUIT_OPEN:
            return await self._retry_circuit_open(message, state, error, ack_handle)

        if classification.category is ErrorCategory.PERMANENT or not (
            self.policy.should_retry(state.attempt)
        ):
            return await self._dead_letter(
                message, error, classification, ack_handle, source_destination
            )

        payload = self._transformations.apply(
            classification.error_class, message.payload, error
        )
        delay = self._scheduler.next_delay(state.attempt, self.policy)
        next_state = self._tracker.record_failure(
            state, classification.error_class, self._clock()
        )
        successor = self._tracker.stamp(message.with_payload(payload), next_state)
        logger.info(
            "Message %s failed with %s (attempt %d/%d); retrying in %.3fs",
            message.message_id,
            classification.error_class,
            state.attempt + 1,
            self.policy.max_retries,
            delay,
        )
        return await self._republish(successor, state.attempt, delay, ack_handle)

    async def _retry_circuit_open(
        self,
        message: Message,
        state: RetryState,
        error: Exception,
        ack_handle: Any,
    ) -> Outcome:
        # Dependency health, not message validity: no attempt is consumed
        # and no transformation is applied.
        if not self.policy.should_retry(state.attempt):
            # A terminal message may not enter a retry destination.
            logger.info(
                "Circuit open for terminal message %s; leaving it for redelivery",
                message.message_id,
            )
            await self._nack(ack_handle)
            return Outcome.DEFERRED
        delay = self._scheduler.next_delay(state.attempt, self.policy)
        if isinstance(error, CircuitOpenError):
            delay = min(max(delay, error.retry_after), self.policy.max_interval)
        logger.info(
            "Circuit open for message %s; re-queueing at level %d in %.3fs",
            message.message_id,
            state.attempt,
            delay,
        )
        return await self._republish(message, state.attempt, delay, ack_handle)

    async def _republish(
        self,
        message: Message,
        level: int,
        delay: float,
        ack_handle: Any,
    ) -> Outcome:
        attrs = dict(message.attributes)
        attrs[RETRY_DELAY_MS] = str(round(delay * 1000))
        message = message.with_attributes(attrs)
        destination = self.topology.retry_destination(level)
        try:
            await self._broker.publish(destination, message, delay=delay)
        except PublishError as e:
            logger.error(
                "Failed to publish message %s to %s: %s; leaving original for "
                "redelivery",
                message.message_id,
                destination,
                e,
            )
            await self._nack(ack_handle)
            return Outcome.DEFERRED
        await self._ack(ack_handle)
        return Outcome.RETRIED

    async def _dead_letter(
        self,
        message: Message,
        error: Exception,
        classification: Classification,
        ack_handle: Any,
        source_destination: str | None,
    ) -> Outcome:
        try:
            await self._dead_letters.archive(
                message,
                error,
                classification,
                source_destination=source_destination,
            )
        except (PublishError, DeadLetterError) as e:
            logger.error(
                "Failed to dead-letter message %s: %s; leaving original for "
                "redelivery",
                message.message_id,
                e,
            )
            await self._nack(ack_handle)
            return Outcome.DEFERRED
        await self._ack(ack_handle)
        return Outcome.DEAD_LETTERED

    async def _ack(self, ack_handle: Any) -> None:
        if ack_handle is not None:
            await self._broker.ack(ack_handle)

    async def _nack(self, ack_handle: Any) -> None:
        if ack_handle is not None:
            await self._broker.nack(ack_handle, requeue=True)
