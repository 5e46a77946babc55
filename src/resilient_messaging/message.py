"""Message and Delivery — immutable transport units."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """Immutable message: opaque payload plus string attributes.

    Retried copies keep the same ``message_id``; they are the same logical
    message. Attribute keys starting with ``x-`` listed in
    :mod:`resilient_messaging.tracking` are owned by the core.
    """

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    payload: bytes = b""
    attributes: dict[str, str] = Field(default_factory=dict)

    def with_payload(self, payload: bytes) -> Message:
        """Return a copy carrying *payload*."""
        return self.model_copy(update={"payload": payload})

    def with_attributes(self, attributes: dict[str, str]) -> Message:
        """Return a copy whose attributes are replaced by *attributes*."""
        return self.model_copy(update={"attributes": dict(attributes)})


class Delivery:
    """A message pulled from a destination, with the broker's ack handle.

    ``ack_handle`` is opaque to the core and passed back to
    :meth:`IBroker.ack` / :meth:`IBroker.nack` unchanged.
    """

    __slots__ = ("ack_handle", "destination", "message")

    def __init__(self, message: Message, ack_handle: Any, destination: str) -> None:
        self.message = message
        self.ack_handle = ack_handle
        self.destination = destination

    def __repr__(self) -> str:
        return (
            f"Delivery(message_id={self.message.message_id!r}, "
            f"destination={self.destination!r})"
        )
