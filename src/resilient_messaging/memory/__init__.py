"""In-memory adapters for testing and single-process use."""

from __future__ import annotations

from .broker import InMemoryBroker
from .dead_letter_store import InMemoryDeadLetterStore

__all__ = [
    "InMemoryBroker",
    "InMemoryDeadLetterStore",
]
