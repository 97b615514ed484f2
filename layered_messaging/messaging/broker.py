"""
Message Broker Module
=====================
Abstract broker adapter contract shared by the Redis, Kafka and RabbitMQ
implementations.

This module provides:
- Broker kind enumeration
- Abstract adapter interface (connect, publish, consume, stop)
- Cancellation token for cooperative consumer loops
- Observer interface for consumer loop failures
- Adapter factory
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Dict, Any, Callable, Awaitable, Union
from dataclasses import dataclass, field

from ..core.config import (
    ConnectionConfig,
    ConsumeOptions,
    ConsumeOptionsLike,
    PublishOptionsLike,
)
from ..core.exceptions import ConfigError
from ..core.logging_config import get_broker_logger

# Handlers may be plain functions or coroutines
MessageCallback = Callable[[Any, Dict[str, Any]], Union[bool, Awaitable[bool]]]


class BrokerKind(str, Enum):
    """Broker families an adapter can front."""

    REDIS = "redis"
    KAFKA = "kafka"
    RABBITMQ = "rabbitmq"


@dataclass
class QueueConfig:
    """Configuration for a RabbitMQ queue."""

    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    arguments: Dict[str, Any] = field(default_factory=dict)  # x-message-ttl, x-max-length, ...


@dataclass
class ExchangeConfig:
    """Configuration for a RabbitMQ exchange."""

    name: str = "amq.topic"
    exchange_type: str = "topic"  # direct, topic, fanout, headers
    durable: bool = True
    auto_delete: bool = False


class CancellationToken:
    """
    Stop flag for one consume session.

    Read at the top of each poll iteration, so a cancel is observed at
    the next poll boundary.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, timeout: float) -> bool:
        """
        Sleep up to timeout seconds, waking early on cancel.

        Returns:
            bool: True if cancelled
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


class ConsumerObserver:
    """
    Receives consumer loop events that are recovered locally.

    Subclass and override the hooks of interest; the defaults do nothing.
    """

    def session_started(self, kind: str, topic: str) -> None:
        pass

    def session_finished(self, kind: str, topic: str, reason: str) -> None:
        pass

    def poll_failed(self, kind: str, topic: str, error: Exception) -> None:
        pass

    def handler_failed(self, kind: str, metadata: Dict[str, Any], error: Exception) -> None:
        pass

    def ack_failed(self, kind: str, metadata: Dict[str, Any], error: Exception) -> None:
        pass

    def message_unprocessable(self, kind: str, metadata: Dict[str, Any], reason: str) -> None:
        pass


class LoggingObserver(ConsumerObserver):
    """Default observer writing every event to the package log."""

    def session_started(self, kind: str, topic: str) -> None:
        get_broker_logger(kind, topic).info("Consumer session started")

    def session_finished(self, kind: str, topic: str, reason: str) -> None:
        get_broker_logger(kind, topic).info(f"Consumer session finished: {reason}")

    def poll_failed(self, kind: str, topic: str, error: Exception) -> None:
        get_broker_logger(kind, topic).warning(f"Consumer poll error: {error}")

    def handler_failed(self, kind: str, metadata: Dict[str, Any], error: Exception) -> None:
        get_broker_logger(kind).error(
            f"Error handling message: {error}",
            exc_info=error,
            extra={"extra_data": metadata},
        )

    def ack_failed(self, kind: str, metadata: Dict[str, Any], error: Exception) -> None:
        get_broker_logger(kind).warning(
            f"Failed to acknowledge message: {error}",
            extra={"extra_data": metadata},
        )

    def message_unprocessable(self, kind: str, metadata: Dict[str, Any], reason: str) -> None:
        get_broker_logger(kind).error(reason, extra={"extra_data": metadata})


async def invoke_handler(
    callback: MessageCallback,
    message: Any,
    metadata: Dict[str, Any],
) -> bool:
    """
    Call a sync or async handler and return its continue flag.

    Args:
        callback: Handler to call
        message: Payload passed to the handler
        metadata: Broker metadata

    Returns:
        bool: True to keep consuming
    """
    result = callback(message, metadata)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


class BrokerAdapter(ABC):
    """
    Abstract broker adapter.

    Wraps one client library behind publish/consume/stop. Connections
    open lazily on first use and close on disconnect() or when leaving
    an ``async with`` block.
    """

    kind: BrokerKind

    def __init__(
        self,
        config: ConnectionConfig,
        observer: Optional[ConsumerObserver] = None,
    ):
        """
        Initialize the adapter.

        Args:
            config: Validated connection configuration
            observer: Sink for consumer loop events (logs by default)
        """
        self.config = config
        self.observer = observer or LoggingObserver()
        self.logger = get_broker_logger(self.kind.value)
        self._connected = False
        self._token: Optional[CancellationToken] = None

    @property
    def is_connected(self) -> bool:
        """Check if broker is connected."""
        return self._connected

    @property
    def is_running(self) -> bool:
        """Check if a consume session is active and not cancelled."""
        return self._token is not None and not self._token.cancelled

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish connection to the broker. No-op when already connected.

        Raises:
            BrokerConnectionError: If connection fails
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """
        Close connection to the broker. Safe on an unconnected adapter.
        """
        pass

    @abstractmethod
    async def publish(
        self,
        topic: str,
        payload: str,
        options: PublishOptionsLike = None,
    ) -> bool:
        """
        Publish a payload.

        Args:
            topic: Topic, channel, stream or routing key
            payload: Serialized message
            options: Publish options

        Returns:
            bool: True if the broker accepted the message

        Raises:
            PublishError: On transport failure
        """
        pass

    @abstractmethod
    async def consume(
        self,
        topic: str,
        callback: MessageCallback,
        options: ConsumeOptionsLike = None,
    ) -> None:
        """
        Run a consume session until stopped or idle.

        Args:
            topic: Topic, channel, stream or binding key
            callback: Handler receiving (payload, metadata), returns continue flag
            options: Consume options

        Raises:
            ConsumeError: On unrecoverable transport failure while running
        """
        pass

    def stop(self) -> None:
        """Ask the running session to exit at the next poll boundary."""
        if self._token is not None:
            self._token.cancel()

    async def _ensure_connected(self) -> None:
        if not self.is_connected:
            await self.connect()

    def _begin_session(self) -> CancellationToken:
        self._token = CancellationToken()
        return self._token

    def _end_session(self, token: CancellationToken) -> None:
        if self._token is token:
            self._token = None

    @staticmethod
    def _poll_budget_spent(empty_polls: int, options: ConsumeOptions) -> bool:
        return options.max_empty_polls is not None and empty_polls >= options.max_empty_polls

    async def __aenter__(self) -> "BrokerAdapter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()
        await self.disconnect()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.config.address})"


def create_adapter(
    kind: Union[BrokerKind, str],
    config: ConnectionConfig,
    **kwargs: Any,
) -> BrokerAdapter:
    """
    Create a broker adapter for the given kind.

    Args:
        kind: Broker kind (redis, kafka, rabbitmq)
        config: Connection configuration
        **kwargs: Adapter-specific arguments

    Returns:
        BrokerAdapter: Adapter instance
    """
    try:
        kind = BrokerKind(kind)
    except ValueError as e:
        raise ConfigError(f"Unknown broker type: {kind}", field="kind", cause=e) from e

    if kind is BrokerKind.REDIS:
        from .redis_broker import RedisAdapter
        return RedisAdapter(config, **kwargs)
    if kind is BrokerKind.KAFKA:
        from .kafka_broker import KafkaAdapter
        return KafkaAdapter(config, **kwargs)
    from .rabbitmq_broker import RabbitMQAdapter
    return RabbitMQAdapter(config, **kwargs)
