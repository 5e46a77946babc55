"""IDeadLetterStore — append-only archive of dead-letter records."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from ..dead_letter import DeadLetterFilter, DeadLetterRecord


@runtime_checkable
class IDeadLetterStore(Protocol):
    """
    Persistence port for :class:`DeadLetterRecord`.

    Records are never rewritten except by :meth:`mark_replayed`, which only
    sets the replay audit fields.
    """

    async def add(self, record: DeadLetterRecord) -> bool:
        """Store *record*; return False if a record with its ID already exists."""
        ...

    async def get(self, record_id: str) -> DeadLetterRecord | None:
        """Return the record with *record_id*, or None."""
        ...

    async def find(self, record_filter: DeadLetterFilter) -> list[DeadLetterRecord]:
        """Return records matching *record_filter*, oldest first."""
        ...

    async def mark_replayed(
        self,
        record_id: str,
        replayed_at: datetime,
        replay_message_id: str,
    ) -> DeadLetterRecord:
        """Set the replay audit fields and return the updated record."""
        ...

    async def count(self, *, include_replayed: bool = False) -> int:
        """Return the number of records (unreplayed only by default)."""
        ...
