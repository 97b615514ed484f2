"""
Messaging Module
================
Layered broker abstraction over Redis, Kafka and RabbitMQ.

This module provides:
- Broker adapters with cooperative consumer loops
- Message serialization and validation
- Publisher and consumer orchestrators with priority fallback
"""

from .broker import (
    BrokerAdapter,
    BrokerKind,
    CancellationToken,
    ConsumerObserver,
    ExchangeConfig,
    LoggingObserver,
    QueueConfig,
    create_adapter,
)
from .message import MessageValidator, serialize, deserialize
from .layers import Layer
from .publisher import MessagePublisher
from .consumer import MessageConsumer, CallbackHandler

__all__ = [
    "BrokerAdapter",
    "BrokerKind",
    "CancellationToken",
    "ConsumerObserver",
    "ExchangeConfig",
    "LoggingObserver",
    "QueueConfig",
    "create_adapter",
    "MessageValidator",
    "serialize",
    "deserialize",
    "Layer",
    "MessagePublisher",
    "MessageConsumer",
    "CallbackHandler",
]
