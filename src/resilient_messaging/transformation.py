"""TransformationRegistry — corrective payload rewrites before a retry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    Transformer = Callable[[bytes, BaseException], bytes]

logger = logging.getLogger("resilient_messaging.transformation")


def identity_transformer(payload: bytes, error: BaseException) -> bytes:  # noqa: ARG001
    """Default transformer: retry the payload unchanged."""
    return payload


class TransformationRegistry:
    """Maps an error class to a transformer applied to the retried payload.

    Lookup is by exact error class, falling back to the default transformer.
    A transformer that raises (or returns something other than ``bytes``) is
    logged and the original payload is retried unmodified.

    Entries are registered at startup and read-only afterwards.
    """

    def __init__(self, default: Transformer | None = None) -> None:
        self._transformers: dict[str, Transformer] = {}
        self._default: Transformer = default or identity_transformer

    def register(self, error_class: str, transformer: Transformer) -> None:
        """Register or override the transformer for *error_class*."""
        self._transformers[error_class] = transformer

    def unregister(self, error_class: str) -> None:
        self._transformers.pop(error_class, None)

    def has(self, error_class: str) -> bool:
        return error_class in self._transformers

    def set_default(self, transformer: Transformer) -> None:
        self._default = transformer

    def apply(self, error_class: str, payload: bytes, error: BaseException) -> bytes:
        transformer = self._transformers.get(error_class, self._default)
        try:
            result = transformer(payload, error)
        except Exception:
            logger.warning(
                "Transformer for %r failed; retrying original payload",
                error_class,
                exc_info=True,
            )
            return payload
        if not isinstance(result, (bytes, bytearray)):
            logger.warning(
                "Transformer for %r returned %s, not bytes; retrying original payload",
                error_class,
                type(result).__name__,
            )
            return payload
        return bytes(result)
