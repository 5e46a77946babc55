"""ResilienceConfig — one immutable object carrying every tunable."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .circuit_breaker import CircuitBreakerConfig
from .retry import RetryPolicy
from .topology import DestinationTopology


class DeadLetterConfig(BaseModel):
    """Occupancy alerting for the dead-letter destination."""

    model_config = ConfigDict(frozen=True)

    alert_threshold: int = Field(default=100, ge=0)
    poll_interval: float = Field(default=60.0, gt=0)
    monitor_enabled: bool = True


class WorkerConfig(BaseModel):
    """Consumer pool sizing and shutdown behaviour."""

    model_config = ConfigDict(frozen=True)

    concurrency: int = Field(default=4, ge=1)
    grace_period: float = Field(default=30.0, ge=0)


class ResilienceConfig(BaseModel):
    """Aggregate configuration, built by the embedding application.

    Example::

        config = ResilienceConfig.model_validate(
            {"retry": {"max_retries": 5}, "dead_letter": {"alert_threshold": 10}}
        )
    """

    model_config = ConfigDict(frozen=True)

    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    topology: DestinationTopology = Field(default_factory=DestinationTopology)
    dead_letter: DeadLetterConfig = Field(default_factory=DeadLetterConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
