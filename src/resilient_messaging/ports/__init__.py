"""Port definitions consumed by the resilience core."""

from __future__ import annotations

from .alerting import DeadLetterAlert, IAlertSink
from .background_worker import IBackgroundWorker
from .broker import IBroker
from .dead_letter import IDeadLetterStore

__all__ = [
    "DeadLetterAlert",
    "IAlertSink",
    "IBackgroundWorker",
    "IBroker",
    "IDeadLetterStore",
]
