"""DeadLetterManager — archive, inspect and replay terminally failed messages."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from .classification import Classification, ErrorCategory
from .exceptions import (
    DeadLetterError,
    DeadLetterRecordNotFoundError,
    MessagingConnectionError,
    PublishError,
)
from .message import Message
from .topology import DestinationTopology
from .tracking import REPLAYED_FROM, DeliveryTracker, FailureEntry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    from .ports.broker import IBroker
    from .ports.dead_letter import IDeadLetterStore

logger = logging.getLogger("resilient_messaging.dead_letter")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeadLetterRecord(BaseModel):
    """Archived terminal failure of one logical message.

    ``record_id`` equals the original ``message_id``, so broker redelivery
    of the same terminal message can never produce a second record.
    """

    model_config = ConfigDict(frozen=True)

    record_id: str
    original_message: Message
    failure_history: tuple[FailureEntry, ...] = ()
    error_class: str
    error_message: str = ""
    category: ErrorCategory = ErrorCategory.TRANSIENT
    source_destination: str | None = None
    finalized_at: datetime
    replayed_at: datetime | None = None
    replay_message_id: str | None = None

    @property
    def replayed(self) -> bool:
        return self.replayed_at is not None


class DeadLetterFilter(BaseModel):
    """Criteria for :meth:`DeadLetterManager.list`; unset fields match all."""

    model_config = ConfigDict(frozen=True)

    error_class: str | None = None
    category: ErrorCategory | None = None
    since: datetime | None = None
    until: datetime | None = None
    replayed: bool | None = None
    limit: int | None = Field(default=None, ge=1)

    def matches(self, record: DeadLetterRecord) -> bool:
        if self.error_class is not None and record.error_class != self.error_class:
            return False
        if self.category is not None and record.category != self.category:
            return False
        if self.since is not None and record.finalized_at < self.since:
            return False
        if self.until is not None and record.finalized_at >= self.until:
            return False
        return self.replayed is None or record.replayed == self.replayed


class DeadLetterManager:
    """Owns the dead-letter destination and its archive.

    Archiving is append-only and serialized per record; different records
    are archived concurrently. Replay emits a fresh message (new ID, attempt
    reset to 0) into the main destination and stamps ``replayed_at`` on the
    record for audit; the archived original is never altered.
    """

    def __init__(
        self,
        broker: IBroker,
        store: IDeadLetterStore,
        *,
        topology: DestinationTopology | None = None,
        tracker: DeliveryTracker | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._broker = broker
        self._store = store
        self._topology = topology or DestinationTopology()
        self._tracker = tracker or DeliveryTracker()
        self._clock = clock or _utcnow
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def destination(self) -> str:
        return self._topology.dead_letter

    async def archive(
        self,
        message: Message,
        error: BaseException,
        classification: Classification | None = None,
        *,
        source_destination: str | None = None,
    ) -> DeadLetterRecord:
        """Publish *message* to dead-letter and record its failure history.

        Idempotent per ``message_id``: a second call returns the existing
        record without publishing again.

        Raises:
            PublishError: The dead-letter destination rejected the message;
                nothing was recorded.
            DeadLetterError: The archive store failed after publishing.
        """
        classification = classification or Classification(
            ErrorCategory.TRANSIENT, type(error).__name__
        )
        async with self._record_lock(message.message_id):
            existing = await self._store.get(message.message_id)
            if existing is not None:
                logger.info(
                    "Message %s already dead-lettered; skipping duplicate archive",
                    message.message_id,
                )
                return existing

            now = self._clock()
            state = self._tracker.read(message)
            entry = FailureEntry(
                at=now, error_class=classification.error_class, attempt=state.attempt
            )
            final_state = replace(
                state,
                first_failure_at=state.first_failure_at or now,
                last_error_class=classification.error_class,
                history=(*state.history, entry),
            )
            routed = self._tracker.stamp(message, final_state)
            await self._publish(self._topology.dead_letter, routed)

            record = DeadLetterRecord(
                record_id=message.message_id,
                original_message=message,
                failure_history=final_state.history,
                error_class=classification.error_class,
                error_message=str(error),
                category=classification.category,
                source_destination=source_destination,
                finalized_at=now,
            )
            try:
                added = await self._store.add(record)
            except Exception as e:
                raise DeadLetterError(
                    f"Failed to archive dead-letter record: {e}",
                    record_id=record.record_id,
                ) from e
            if not added:
                stored = await self._store.get(record.record_id)
                if stored is not None:
                    return stored
            logger.warning(
                "Message %s dead-lettered after %d attempt(s): %s (%s)",
                message.message_id,
                state.attempt,
                classification.error_class,
                classification.category.value,
            )
            return record

    async def get(self, record_id: str) -> DeadLetterRecord:
        record = await self._store.get(record_id)
        if record is None:
            raise DeadLetterRecordNotFoundError(record_id)
        return record

    async def list(
        self, record_filter: DeadLetterFilter | None = None
    ) -> Sequence[DeadLetterRecord]:
        """Return archived records matching *record_filter*, oldest first."""
        return await self._store.find(record_filter or DeadLetterFilter())

    async def replay(self, record_id: str, *, force: bool = False) -> Message:
        """Re-inject the archived message into the main destination.

        Args:
            record_id: Record to replay.
            force: Replay even if the record was already replayed.

        Raises:
            DeadLetterRecordNotFoundError: Unknown *record_id*.
            DeadLetterError: The record was already replayed and *force* is
                False.
            PublishError: The main destination rejected the message.
        """
        record = await self.get(record_id)
        if record.replayed and not force:
            raise DeadLetterError(
                f"Dead-letter record {record_id!r} already replayed "
                f"at {record.replayed_at}",
                record_id=record_id,
            )
        fresh = self._tracker.reset(record.original_message)
        attrs = dict(fresh.attributes)
        attrs[REPLAYED_FROM] = record_id
        replayed = fresh.model_copy(
            update={"message_id": str(uuid.uuid4()), "attributes": attrs}
        )
        await self._publish(self._topology.main, replayed)
        await self._store.mark_replayed(record_id, self._clock(), replayed.message_id)
        logger.info(
            "Replayed dead-letter record %s as message %s",
            record_id,
            replayed.message_id,
        )
        return replayed

    async def occupancy_count(self) -> int:
        """Number of archived records not yet replayed."""
        return await self._store.count()

    async def _publish(self, destination: str, message: Message) -> None:
        try:
            await self._broker.publish(destination, message)
        except (PublishError, MessagingConnectionError):
            raise
        except Exception as e:
            raise PublishError(str(e), destination=destination) from e

    @contextlib.asynccontextmanager
    async def _record_lock(self, record_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(record_id, asyncio.Lock())
        self._lock_users[record_id] = self._lock_users.get(record_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[record_id] -= 1
            if self._lock_users[record_id] == 0:
                del self._lock_users[record_id]
                del self._locks[record_id]
