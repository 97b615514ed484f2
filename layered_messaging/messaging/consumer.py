"""
Consumer Module
===============
Layered message consumption with session-level fallback.

consume() runs one blocking session on the highest-priority layer. Only
when that session raises does the consumer start a new session on the
next layer. Messages already delivered on a failed layer are not
replayed, and lower-priority layers deliver nothing while a higher one
is healthy.
"""

from typing import Optional, Dict, Any, Callable, Union

from ..core.config import (
    Config,
    ConnectionConfig,
    ConsumeOptionsLike,
    parse_broker_address,
    resolve_consume_options,
)
from ..core.exceptions import ConsumeError
from ..core.logging_config import get_logger

from .broker import BrokerKind, ExchangeConfig, QueueConfig, invoke_handler
from .layers import LayeredClient, format_layer_errors
from .message import deserialize

logger = get_logger(__name__)


class CallbackHandler:
    """Wraps a plain callable as a handler object."""

    def __init__(self, callback: Callable[[Any, Dict[str, Any]], Any]):
        self.callback = callback

    def handle(self, message: Any, metadata: Dict[str, Any]) -> Any:
        return self.callback(message, metadata)


Handler = Union[Callable[[Any, Dict[str, Any]], Any], CallbackHandler, Any]


def _as_callable(handler: Handler) -> Callable[[Any, Dict[str, Any]], Any]:
    handle = getattr(handler, "handle", None)
    if callable(handle):
        return handle
    if callable(handler):
        return handler
    raise TypeError(
        f"Handler must be callable or provide handle(); got {type(handler).__name__}"
    )


class MessageConsumer(LayeredClient):
    """
    Consumes from an ordered list of broker layers.

    Handlers receive (message, metadata) and return True to keep
    consuming or False to stop. Sync and async handlers are supported.
    """

    role = "consumer"

    def __init__(self, observer=None):
        super().__init__(observer)
        self._auto_deserialize = True

    def auto_deserialize(self, enabled: bool = True) -> "MessageConsumer":
        """
        Toggle decoding of JSON object/array payloads before the handler.

        Returns:
            self, for chaining
        """
        self._auto_deserialize = enabled
        return self

    def set_kafka(
        self,
        brokers: str,
        group_id: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        priority: int = 1,
    ) -> "MessageConsumer":
        """
        Add a Kafka layer.

        Args:
            brokers: Bootstrap address, "host:port"
            group_id: Consumer group
            username: SASL username
            password: SASL password
            options: Extra aiokafka client arguments
            priority: Layer priority

        Returns:
            self, for chaining
        """
        from .kafka_broker import KafkaAdapter

        host, port = parse_broker_address(brokers, 9092)
        config = ConnectionConfig(
            host=host,
            port=port,
            username=username,
            password=password,
            options=dict(options or {}),
        )
        adapter = KafkaAdapter(config, group_id=group_id, observer=self.observer)
        return self.add_layer(BrokerKind.KAFKA, adapter, priority)

    def set_rabbitmq(
        self,
        host: str,
        queue_name: str,
        port: int = 5672,
        username: str = "guest",
        password: str = "guest",
        options: Optional[Dict[str, Any]] = None,
        priority: int = 2,
        queue_config: Optional[QueueConfig] = None,
        exchange_name: str = "amq.topic",
    ) -> "MessageConsumer":
        """
        Add a RabbitMQ layer.

        Args:
            host: RabbitMQ host
            queue_name: Queue to declare and consume from
            port: AMQP port
            username: Login
            password: Password
            options: vhost, timeout
            priority: Layer priority
            queue_config: Queue declaration settings
            exchange_name: Exchange the queue is bound to

        Returns:
            self, for chaining
        """
        from .rabbitmq_broker import RabbitMQAdapter

        config = ConnectionConfig(
            host=host,
            port=port,
            username=username,
            password=password,
            options=dict(options or {}),
        )
        adapter = RabbitMQAdapter(
            config,
            queue_name=queue_name,
            exchange=ExchangeConfig(name=exchange_name),
            queue_config=queue_config,
            observer=self.observer,
        )
        return self.add_layer(BrokerKind.RABBITMQ, adapter, priority)

    @classmethod
    def from_config(cls, config: Optional[Config] = None, **kwargs: Any) -> "MessageConsumer":
        """
        Build a consumer with one layer per configured broker.

        Args:
            config: Configuration (defaults to get_config())
            **kwargs: Passed to the constructor

        Returns:
            MessageConsumer: Configured consumer
        """
        if config is None:
            from ..core.config import get_config
            config = get_config()

        consumer = cls(**kwargs)
        consumer._apply_redis_config(config)

        if config.kafka is not None:
            connection = config.kafka.connection
            consumer.set_kafka(
                connection.address,
                config.kafka_group_id,
                username=connection.username,
                password=connection.password,
                options=connection.options,
                priority=config.kafka.priority,
            )

        if config.rabbitmq is not None:
            connection = config.rabbitmq.connection
            consumer.set_rabbitmq(
                connection.host,
                config.rabbitmq_queue,
                port=connection.port,
                username=connection.username or "guest",
                password=connection.password or "guest",
                options=connection.options,
                priority=config.rabbitmq.priority,
                exchange_name=config.rabbitmq_exchange,
            )

        return consumer

    def _wrap(self, handler: Handler):
        target = _as_callable(handler)
        auto_deserialize = self._auto_deserialize

        async def callback(payload: str, metadata: Dict[str, Any]) -> bool:
            message = deserialize(payload) if auto_deserialize else payload
            return await invoke_handler(target, message, metadata)

        return callback

    async def consume(
        self,
        topic: str,
        handler: Handler,
        options: ConsumeOptionsLike = None,
    ) -> None:
        """
        Run a consume session, falling back to the next layer if it raises.

        Args:
            topic: Topic, channel, stream or binding key
            handler: Callable or object with handle(message, metadata)
            options: Consume options

        Raises:
            ConfigError: If no layers are configured
            ConsumeError: If every layer raised
        """
        self._require_layers()
        callback = self._wrap(handler)
        options = resolve_consume_options(options)

        errors = []
        for layer in self._layers:
            try:
                await layer.adapter.consume(topic, callback, options)
            except Exception as e:
                errors.append((layer.kind.value, str(e)))
                logger.warning(
                    f"Consume via {layer.kind.value} failed, trying next layer: {e}"
                )
                continue
            return

        raise ConsumeError(
            f"All consumer layers failed. Errors: {format_layer_errors(errors)}",
            topic=topic,
            errors=errors,
        )

    def stop(self) -> None:
        """Stop the active session on every layer."""
        for layer in self._layers:
            layer.adapter.stop()
