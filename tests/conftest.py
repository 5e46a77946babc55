"""Pytest fixtures for resilience tests."""

from __future__ import annotations

import pytest

from resilient_messaging.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from resilient_messaging.dead_letter import DeadLetterManager
from resilient_messaging.instrumentation import HookRegistry
from resilient_messaging.memory import InMemoryBroker, InMemoryDeadLetterStore
from resilient_messaging.retry import RetryPolicy, RetryScheduler
from resilient_messaging.router import MessageRouter
from resilient_messaging.transformation import TransformationRegistry

from support import FakeClock, FakeWallClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def store() -> InMemoryDeadLetterStore:
    return InMemoryDeadLetterStore()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=3,
        initial_interval=1.0,
        multiplier=2.0,
        max_interval=10.0,
        jitter_factor=0.0,
    )


@pytest.fixture
def dead_letters(
    broker: InMemoryBroker,
    store: InMemoryDeadLetterStore,
    wall_clock: FakeWallClock,
) -> DeadLetterManager:
    return DeadLetterManager(broker, store, clock=wall_clock)


@pytest.fixture
def transformations() -> TransformationRegistry:
    return TransformationRegistry()


@pytest.fixture
def breakers(clock: FakeClock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=100, reset_timeout=30.0), clock=clock
    )


@pytest.fixture
def router(
    broker: InMemoryBroker,
    dead_letters: DeadLetterManager,
    policy: RetryPolicy,
    breakers: CircuitBreakerRegistry,
    transformations: TransformationRegistry,
    wall_clock: FakeWallClock,
) -> MessageRouter:
    return MessageRouter(
        broker,
        dead_letters,
        policy,
        scheduler=RetryScheduler(rng=lambda: 0.5),
        breakers=breakers,
        transformations=transformations,
        clock=wall_clock,
        hooks=HookRegistry(),
    )
