"""Alert sink port for dead-letter occupancy alerts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime


@dataclass(frozen=True)
class DeadLetterAlert:
    """Immutable occupancy alert."""

    occupancy: int
    threshold: int
    raised_at: datetime
    destination: str = "dead-letter"


@runtime_checkable
class IAlertSink(Protocol):
    """Protocol for delivering occupancy alerts (pager, chat, log, …)."""

    async def alert(self, alert: DeadLetterAlert) -> None:
        """Deliver *alert*."""
        ...
