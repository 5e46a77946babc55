"""ErrorClassifier — map handler exceptions to retry categories."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .exceptions import CircuitOpenError, HandlerFailure, PermanentError


class ErrorCategory(str, Enum):
    """How the router treats a failure."""

    TRANSIENT = "TRANSIENT"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    PERMANENT = "PERMANENT"


@dataclass(frozen=True)
class Classification:
    """Result of classifying an exception."""

    category: ErrorCategory
    error_class: str


class ErrorClassifier:
    """Lookup table from exception types to :class:`Classification`.

    Registered types are matched along the exception's MRO, most specific
    first. Unregistered exceptions fall back to the built-in rules:
    :class:`CircuitOpenError` is CIRCUIT_OPEN, :class:`PermanentError` is
    PERMANENT, anything else is TRANSIENT.

    The error class string is, in order of preference: the ``error_class``
    attribute of a :class:`HandlerFailure`, the name given at registration,
    the exception type name.
    """

    def __init__(self) -> None:
        self._table: dict[type[BaseException], tuple[ErrorCategory, str | None]] = {}

    def register(
        self,
        exc_type: type[BaseException],
        category: ErrorCategory,
        error_class: str | None = None,
    ) -> None:
        """Register or override the classification of *exc_type*."""
        self._table[exc_type] = (category, error_class)

    def classify(self, error: BaseException) -> Classification:
        category, name = self._lookup(type(error))
        if isinstance(error, HandlerFailure) and error.error_class:
            name = error.error_class
        return Classification(
            category=category, error_class=name or type(error).__name__
        )

    def _lookup(
        self, exc_type: type[BaseException]
    ) -> tuple[ErrorCategory, str | None]:
        if issubclass(exc_type, CircuitOpenError):
            return ErrorCategory.CIRCUIT_OPEN, None
        for klass in exc_type.__mro__:
            entry = self._table.get(klass)
            if entry is not None:
                return entry
        if issubclass(exc_type, PermanentError):
            return ErrorCategory.PERMANENT, None
        return ErrorCategory.TRANSIENT, None
