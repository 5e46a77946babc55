"""InMemoryDeadLetterStore — IDeadLetterStore backed by an insertion-ordered dict."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..exceptions import DeadLetterRecordNotFoundError

if TYPE_CHECKING:
    from datetime import datetime

    from ..dead_letter import DeadLetterFilter, DeadLetterRecord


class InMemoryDeadLetterStore:
    """Dead-letter archive kept in process memory, oldest record first."""

    def __init__(self) -> None:
        self._records: dict[str, DeadLetterRecord] = {}

    async def add(self, record: DeadLetterRecord) -> bool:
        if record.record_id in self._records:
            return False
        self._records[record.record_id] = record
        return True

    async def get(self, record_id: str) -> DeadLetterRecord | None:
        return self._records.get(record_id)

    async def find(self, record_filter: DeadLetterFilter) -> list[DeadLetterRecord]:
        matched = [r for r in self._records.values() if record_filter.matches(r)]
        if record_filter.limit is not None:
            matched = matched[: record_filter.limit]
        return matched

    async def mark_replayed(
        self,
        record_id: str,
        replayed_at: datetime,
        replay_message_id: str,
    ) -> DeadLetterRecord:
        record = self._records.get(record_id)
        if record is None:
            raise DeadLetterRecordNotFoundError(record_id)
        updated = record.model_copy(
            update={"replayed_at": replayed_at, "replay_message_id": replay_message_id}
        )
        self._records[record_id] = updated
        return updated

    async def count(self, *, include_replayed: bool = False) -> int:
        if include_replayed:
            return len(self._records)
        return sum(1 for r in self._records.values() if not r.replayed)

    def clear(self) -> None:
        """Drop all records (for test teardown)."""
        self._records.clear()
