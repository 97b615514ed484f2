"""
Layered Messaging Core Module
=============================
Core infrastructure shared by the broker adapters and orchestrators.

This module provides:
- Configuration management
- Logging infrastructure
- Exception hierarchy
"""

from .config import (
    Config,
    ConnectionConfig,
    ConsumeOptions,
    PublishOptions,
    get_config,
    reload_config,
)
from .logging_config import setup_logging, get_logger, get_broker_logger
from .exceptions import (
    MessagingException,
    BrokerConnectionError,
    PublishError,
    ConsumeError,
    ConfigError,
    ValidationError,
)

__all__ = [
    "Config",
    "ConnectionConfig",
    "ConsumeOptions",
    "PublishOptions",
    "get_config",
    "reload_config",
    "setup_logging",
    "get_logger",
    "get_broker_logger",
    "MessagingException",
    "BrokerConnectionError",
    "PublishError",
    "ConsumeError",
    "ConfigError",
    "ValidationError",
]
