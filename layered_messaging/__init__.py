"""
Layered Messaging
=================
Publish and consume across Redis, Kafka and RabbitMQ with prioritized
fallback layers.
"""

from .core import (
    Config,
    ConnectionConfig,
    ConsumeOptions,
    PublishOptions,
    get_config,
    setup_logging,
    MessagingException,
    BrokerConnectionError,
    PublishError,
    ConsumeError,
    ConfigError,
    ValidationError,
)
from .messaging import (
    BrokerKind,
    ConsumerObserver,
    MessagePublisher,
    MessageConsumer,
    CallbackHandler,
)

__version__ = "1.0.0"

__all__ = [
    "Config",
    "ConnectionConfig",
    "ConsumeOptions",
    "PublishOptions",
    "get_config",
    "setup_logging",
    "MessagingException",
    "BrokerConnectionError",
    "PublishError",
    "ConsumeError",
    "ConfigError",
    "ValidationError",
    "BrokerKind",
    "ConsumerObserver",
    "MessagePublisher",
    "MessageConsumer",
    "CallbackHandler",
]
