"""DestinationTopology — naming of main, retry and dead-letter destinations."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class DestinationTopology(BaseModel):
    """Destination names produced and consumed by the core.

    With ``per_message_delay`` the broker honours a per-message delay, so a
    single ``retry_prefix`` destination serves every level. Otherwise each
    level gets its own ``<retry_prefix>.<level>`` destination.

    A single delayed destination releases messages in order only if the
    broker schedules each one independently. RabbitMQ expires messages at
    the queue head alone: a short delay queued behind a longer one is held
    until the longer one expires. Keep ``per_message_delay`` off for
    RabbitMQ unless the delayed-message exchange plugin does the delaying.
    """

    model_config = ConfigDict(frozen=True)

    main: str = Field(default="main", min_length=1)
    retry_prefix: str = Field(default="retry", min_length=1)
    dead_letter: str = Field(default="dead-letter", min_length=1)
    per_message_delay: bool = False

    def retry_destination(self, level: int) -> str:
        if self.per_message_delay:
            return self.retry_prefix
        return f"{self.retry_prefix}.{level}"

    def retry_destinations(self, max_retries: int) -> list[str]:
        if max_retries <= 0:
            return []
        if self.per_message_delay:
            return [self.retry_prefix]
        return [self.retry_destination(level) for level in range(max_retries)]

    def consume_destinations(self, max_retries: int) -> list[str]:
        """Destinations workers pull from: main first, then retry levels."""
        return [self.main, *self.retry_destinations(max_retries)]
