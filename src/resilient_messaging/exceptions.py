"""Exception hierarchy for resilient-messaging."""

from __future__ import annotations


class ResilienceError(Exception):
    """Root exception for the entire resilient-messaging toolkit."""


class InfrastructureError(ResilienceError):
    """Base class for all infrastructure-related errors."""


class MessagingError(InfrastructureError):
    """Base class for all messaging-related infrastructure errors."""


class MessagingConnectionError(MessagingError):
    """Raised when connectivity to the message broker fails.

    This is the only failure the router surfaces to its caller; reconnecting
    is the broker client's responsibility.
    """


class PublishError(MessagingError):
    """Raised when a message cannot be published to a destination."""

    def __init__(self, message: str, destination: str | None = None) -> None:
        self.destination = destination
        super().__init__(message)


class DeadLetterError(MessagingError):
    """Raised when a dead-letter operation cannot be completed."""

    def __init__(self, message: str, record_id: str | None = None) -> None:
        self.record_id = record_id
        super().__init__(message)


class DeadLetterRecordNotFoundError(DeadLetterError):
    """Raised when a dead-letter record cannot be found by ID."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Dead-letter record {record_id!r} not found", record_id)


class HandlerFailure(ResilienceError):
    """Base class for failures raised by application handlers.

    ``error_class`` is the classification key used for transformer lookup
    and dead-letter filtering. When omitted the exception type name is used.
    """

    def __init__(self, message: str = "", *, error_class: str | None = None) -> None:
        self.error_class = error_class
        super().__init__(message)


class TransientError(HandlerFailure):
    """A retryable failure (downstream timeout, temporary unavailability, ...)."""


class PermanentError(HandlerFailure):
    """A non-retryable failure; the message goes straight to dead-letter."""


class CircuitOpenError(ResilienceError):
    """Raised when a circuit breaker is open and rejecting calls."""

    def __init__(self, key: str, retry_after: float = 0.0) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker {key!r} is open; retry after {retry_after:.1f}s"
        )


class TransformationError(ResilienceError):
    """Raised by a transformer that cannot repair a payload.

    Never escapes :class:`~resilient_messaging.transformation.TransformationRegistry`.
    """
