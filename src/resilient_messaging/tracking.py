"""DeliveryTracker — retry metadata carried on the message itself.

Attempt counts live in message attributes rather than in process-local
state, so concurrent workers (possibly in different processes) always see
the same retry state for a logical message.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from .message import Message

logger = logging.getLogger("resilient_messaging.tracking")

RETRY_COUNT = "x-retry-count"
FIRST_FAILURE_AT = "x-first-failure-at"
LAST_ERROR_CLASS = "x-last-error-class"
FAILURE_HISTORY = "x-failure-history"
RETRY_DELAY_MS = "x-retry-delay-ms"
REPLAYED_FROM = "x-replayed-from"

CORE_ATTRIBUTES: frozenset[str] = frozenset(
    {
        RETRY_COUNT,
        FIRST_FAILURE_AT,
        LAST_ERROR_CLASS,
        FAILURE_HISTORY,
        RETRY_DELAY_MS,
        REPLAYED_FROM,
    }
)


class FailureEntry(BaseModel):
    """One failed handler invocation: when, why, and at which attempt."""

    model_config = ConfigDict(frozen=True)

    at: datetime
    error_class: str
    attempt: int


@dataclass(frozen=True)
class RetryState:
    """Derived view over the retry attributes of a message."""

    attempt: int = 0
    first_failure_at: datetime | None = None
    last_error_class: str | None = None
    history: tuple[FailureEntry, ...] = field(default_factory=tuple)


def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _parse_attempt(raw: str | None) -> int:
    if raw is None:
        return 0
    try:
        attempt = int(raw)
    except ValueError:
        return 0
    return max(attempt, 0)


def _parse_history(raw: str | None) -> tuple[FailureEntry, ...]:
    if not raw:
        return ()
    try:
        items = json.loads(raw)
        return tuple(FailureEntry.model_validate(item) for item in items)
    except (TypeError, ValueError):
        logger.debug("Ignoring malformed %s attribute", FAILURE_HISTORY)
        return ()


class DeliveryTracker:
    """Reads and writes :class:`RetryState` on message attributes.

    Both operations are pure: ``read`` never fails (absent or malformed
    attributes fall back to defaults) and ``stamp`` returns a new message,
    leaving every attribute it does not own untouched and in order.
    """

    def read(self, message: Message) -> RetryState:
        attrs = message.attributes
        return RetryState(
            attempt=_parse_attempt(attrs.get(RETRY_COUNT)),
            first_failure_at=_parse_timestamp(attrs.get(FIRST_FAILURE_AT)),
            last_error_class=attrs.get(LAST_ERROR_CLASS) or None,
            history=_parse_history(attrs.get(FAILURE_HISTORY)),
        )

    def stamp(self, message: Message, state: RetryState) -> Message:
        attrs = dict(message.attributes)
        attrs[RETRY_COUNT] = str(state.attempt)
        self._set_or_drop(
            attrs,
            FIRST_FAILURE_AT,
            state.first_failure_at.isoformat() if state.first_failure_at else None,
        )
        self._set_or_drop(attrs, LAST_ERROR_CLASS, state.last_error_class)
        self._set_or_drop(
            attrs,
            FAILURE_HISTORY,
            json.dumps([e.model_dump(mode="json") for e in state.history])
            if state.history
            else None,
        )
        return message.with_attributes(attrs)

    def record_failure(
        self,
        state: RetryState,
        error_class: str,
        now: datetime,
    ) -> RetryState:
        """Return the state of the successor copy after a failed attempt."""
        entry = FailureEntry(at=now, error_class=error_class, attempt=state.attempt)
        return replace(
            state,
            attempt=state.attempt + 1,
            first_failure_at=state.first_failure_at or now,
            last_error_class=error_class,
            history=(*state.history, entry),
        )

    def reset(self, message: Message) -> Message:
        """Strip every core-owned attribute (used when replaying)."""
        attrs = {
            k: v for k, v in message.attributes.items() if k not in CORE_ATTRIBUTES
        }
        return message.with_attributes(attrs)

    @staticmethod
    def _set_or_drop(attrs: dict[str, str], key: str, value: str | None) -> None:
        if value is None:
            attrs.pop(key, None)
        else:
            attrs[key] = value
