"""bootstrap_resilience — one-call wiring of the resilience core."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .circuit_breaker import CircuitBreakerRegistry
from .classification import ErrorClassifier
from .config import ResilienceConfig
from .dead_letter import DeadLetterManager
from .monitor import DeadLetterMonitor
from .retry import RetryScheduler
from .router import MessageRouter
from .tracking import DeliveryTracker
from .transformation import TransformationRegistry
from .worker import ConsumerWorker

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from .instrumentation import HookRegistry
    from .ports.alerting import IAlertSink
    from .ports.broker import IBroker
    from .ports.dead_letter import IDeadLetterStore

logger = logging.getLogger("resilient_messaging.bootstrap")


class ResilienceBootstrapResult:
    """Container returned by :func:`bootstrap_resilience` with all wired components.

    Attributes:
        config: The configuration used.
        tracker, scheduler, breakers, classifier, transformations: The
            shared building blocks.
        dead_letters: The dead-letter manager.
        router: The message router.
        monitor: Optional :class:`DeadLetterMonitor` (if enabled in config).
    """

    def __init__(
        self,
        *,
        config: ResilienceConfig,
        broker: IBroker,
        tracker: DeliveryTracker,
        scheduler: RetryScheduler,
        breakers: CircuitBreakerRegistry,
        classifier: ErrorClassifier,
        transformations: TransformationRegistry,
        dead_letters: DeadLetterManager,
        router: MessageRouter,
        monitor: DeadLetterMonitor | None = None,
    ) -> None:
        self.config = config
        self.broker = broker
        self.tracker = tracker
        self.scheduler = scheduler
        self.breakers = breakers
        self.classifier = classifier
        self.transformations = transformations
        self.dead_letters = dead_letters
        self.router = router
        self.monitor = monitor

    def worker(
        self,
        handler: Callable[[bytes], Awaitable[Any]],
        *,
        dependency: str | None = None,
    ) -> ConsumerWorker:
        """Create a :class:`ConsumerWorker` for *handler* using the config."""
        return ConsumerWorker(
            self.broker,
            self.router,
            handler,
            concurrency=self.config.worker.concurrency,
            dependency=dependency,
            grace_period=self.config.worker.grace_period,
        )


def bootstrap_resilience(
    *,
    broker: IBroker,
    store: IDeadLetterStore,
    config: ResilienceConfig | None = None,
    transformations: TransformationRegistry | None = None,
    classifier: ErrorClassifier | None = None,
    alert_sinks: Sequence[IAlertSink] | None = None,
    hooks: HookRegistry | None = None,
) -> ResilienceBootstrapResult:
    """Wire up the complete resilience core in one call.

    Parameters
    ----------
    broker:
        Broker adapter used for consuming, retrying and dead-lettering.
    store:
        Archive for dead-letter records.
    config:
        Tunables; defaults to ``ResilienceConfig()``.
    transformations, classifier:
        Pre-populated registries; empty ones are created otherwise. Both
        must be fully registered before workers start.
    alert_sinks:
        Destinations for occupancy alerts (logging by default).
    hooks:
        Instrumentation registry; the context registry is used otherwise.
    """
    config = config or ResilienceConfig()
    tracker = DeliveryTracker()
    scheduler = RetryScheduler()
    breakers = CircuitBreakerRegistry(config.circuit_breaker)
    classifier = classifier or ErrorClassifier()
    transformations = transformations or TransformationRegistry()
    dead_letters = DeadLetterManager(
        broker, store, topology=config.topology, tracker=tracker
    )
    router = MessageRouter(
        broker,
        dead_letters,
        config.retry,
        tracker=tracker,
        scheduler=scheduler,
        breakers=breakers,
        classifier=classifier,
        transformations=transformations,
        topology=config.topology,
        hooks=hooks,
    )
    monitor = None
    if config.dead_letter.monitor_enabled:
        monitor = DeadLetterMonitor(
            dead_letters,
            threshold=config.dead_letter.alert_threshold,
            poll_interval=config.dead_letter.poll_interval,
            sinks=alert_sinks,
            hooks=hooks,
        )
    logger.info(
        "Resilience core wired (max_retries=%d, retry destinations=%s)",
        config.retry.max_retries,
        config.topology.retry_destinations(config.retry.max_retries),
    )
    return ResilienceBootstrapResult(
        config=config,
        broker=broker,
        tracker=tracker,
        scheduler=scheduler,
        breakers=breakers,
        classifier=classifier,
        transformations=transformations,
        dead_letters=dead_letters,
        router=router,
        monitor=monitor,
    )
