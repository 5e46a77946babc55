"""RabbitMQ broker adapter (optional extra: resilient-messaging[rabbitmq])."""

from __future__ import annotations

from .broker import RabbitMQBroker
from .connection import RabbitMQConnectionManager

__all__ = [
    "RabbitMQBroker",
    "RabbitMQConnectionManager",
]
