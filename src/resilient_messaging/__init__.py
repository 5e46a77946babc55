"""Resilient message consumption — retry, circuit breaking, dead-lettering."""

from __future__ import annotations

from .bootstrap import ResilienceBootstrapResult, bootstrap_resilience
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    CircuitState,
)
from .classification import Classification, ErrorCategory, ErrorClassifier
from .config import DeadLetterConfig, ResilienceConfig, WorkerConfig
from .dead_letter import DeadLetterFilter, DeadLetterManager, DeadLetterRecord
from .exceptions import (
    CircuitOpenError,
    DeadLetterError,
    DeadLetterRecordNotFoundError,
    HandlerFailure,
    InfrastructureError,
    MessagingConnectionError,
    MessagingError,
    PermanentError,
    PublishError,
    ResilienceError,
    TransformationError,
    TransientError,
)
from .memory import InMemoryBroker, InMemoryDeadLetterStore
from .message import Delivery, Message
from .monitor import DeadLetterMonitor, LoggingAlertSink
from .retry import RetryPolicy, RetryScheduler
from .router import MessageRouter, Outcome
from .topology import DestinationTopology
from .tracking import DeliveryTracker, FailureEntry, RetryState
from .transformation import TransformationRegistry
from .worker import ConsumerWorker

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitOpenError",
    "CircuitState",
    "Classification",
    "ConsumerWorker",
    "DeadLetterConfig",
    "DeadLetterError",
    "DeadLetterFilter",
    "DeadLetterManager",
    "DeadLetterMonitor",
    "DeadLetterRecord",
    "DeadLetterRecordNotFoundError",
    "Delivery",
    "DeliveryTracker",
    "DestinationTopology",
    "ErrorCategory",
    "ErrorClassifier",
    "FailureEntry",
    "HandlerFailure",
    "InMemoryBroker",
    "InMemoryDeadLetterStore",
    "InfrastructureError",
    "LoggingAlertSink",
    "Message",
    "MessageRouter",
    "MessagingConnectionError",
    "MessagingError",
    "Outcome",
    "PermanentError",
    "PublishError",
    "ResilienceBootstrapResult",
    "ResilienceConfig",
    "ResilienceError",
    "RetryPolicy",
    "RetryScheduler",
    "RetryState",
    "TransformationError",
    "TransformationRegistry",
    "TransientError",
    "WorkerConfig",
    "bootstrap_resilience",
]
