"""
Publisher Module
================
Layered message publishing with priority fallback and broadcast.
"""

from typing import Optional, Dict, Any

from ..core.config import (
    Config,
    ConnectionConfig,
    PublishOptionsLike,
    parse_broker_address,
    resolve_publish_options,
)
from ..core.exceptions import PublishError
from ..core.logging_config import get_logger

from .broker import BrokerKind, ExchangeConfig
from .layers import LayeredClient, format_layer_errors
from .message import LogicalMessage, serialize

logger = get_logger(__name__)


class MessagePublisher(LayeredClient):
    """
    Publishes through an ordered list of broker layers.

    publish() tries layers in priority order until one does not raise.
    publish_to_all() sends to every layer and reports each outcome.
    """

    role = "publisher"

    def set_kafka(
        self,
        brokers: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        priority: int = 1,
    ) -> "MessagePublisher":
        """
        Add a Kafka layer.

        Args:
            brokers: Bootstrap address, "host:port"
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
        return self.add_layer(
            BrokerKind.KAFKA, KafkaAdapter(config, observer=self.observer), priority
        )

    def set_rabbitmq(
        self,
        host: str,
        port: int = 5672,
        username: str = "guest",
        password: str = "guest",
        options: Optional[Dict[str, Any]] = None,
        priority: int = 2,
        exchange_name: str = "amq.topic",
        exchange_type: str = "topic",
    ) -> "MessagePublisher":
        """
        Add a RabbitMQ layer.

        Args:
            host: RabbitMQ host
            port: AMQP port
            username: Login
            password: Password
            options: vhost, timeout
            priority: Layer priority
            exchange_name: Exchange messages are published to
            exchange_type: direct, topic, fanout or headers

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
            exchange=ExchangeConfig(name=exchange_name, exchange_type=exchange_type),
            observer=self.observer,
        )
        return self.add_layer(BrokerKind.RABBITMQ, adapter, priority)

    @classmethod
    def from_config(cls, config: Optional[Config] = None, **kwargs: Any) -> "MessagePublisher":
        """
        Build a publisher with one layer per configured broker.

        Args:
            config: Configuration (defaults to get_config())
            **kwargs: Passed to the constructor

        Returns:
            MessagePublisher: Configured publisher
        """
        if config is None:
            from ..core.config import get_config
            config = get_config()

        publisher = cls(**kwargs)
        publisher._apply_redis_config(config)

        if config.kafka is not None:
            connection = config.kafka.connection
            publisher.set_kafka(
                connection.address,
                username=connection.username,
                password=connection.password,
                options=connection.options,
                priority=config.kafka.priority,
            )

        if config.rabbitmq is not None:
            connection = config.rabbitmq.connection
            publisher.set_rabbitmq(
                connection.host,
                port=connection.port,
                username=connection.username or "guest",
                password=connection.password or "guest",
                options=connection.options,
                priority=config.rabbitmq.priority,
                exchange_name=config.rabbitmq_exchange,
            )

        return publisher

    async def publish(
        self,
        topic: str,
        message: LogicalMessage,
        options: PublishOptionsLike = None,
    ) -> bool:
        """
        Publish through the first layer that does not raise.

        Args:
            topic: Topic, channel, stream or routing key
            message: Text, dict/list, or encodable object
            options: Publish options

        Returns:
            bool: Result of the first layer that did not raise

        Raises:
            ConfigError: If no layers are configured
            ValidationError: If the message cannot be serialized
            PublishError: If every layer raised
        """
        self._require_layers()
        payload = serialize(message)
        options = resolve_publish_options(options)

        errors = []
        for layer in self._layers:
            try:
                result = await layer.adapter.publish(topic, payload, options)
            except Exception as e:
                errors.append((layer.kind.value, str(e)))
                logger.warning(
                    f"Publish via {layer.kind.value} failed, trying next layer: {e}"
                )
                continue

            logger.debug(f"Published to {topic} via {layer.kind.value}")
            return result

        raise PublishError(
            f"All publisher layers failed. Errors: {format_layer_errors(errors)}",
            topic=topic,
            errors=errors,
        )

    async def publish_to_all(
        self,
        topic: str,
        message: LogicalMessage,
        options: PublishOptionsLike = None,
    ) -> Dict[str, bool]:
        """
        Publish through every layer.

        Args:
            topic: Topic, channel, stream or routing key
            message: Text, dict/list, or encodable object
            options: Publish options

        Returns:
            Dict[str, bool]: Outcome per broker kind; False where a layer raised
        """
        self._require_layers()
        payload = serialize(message)
        options = resolve_publish_options(options)

        results: Dict[str, bool] = {}
        for layer in self._layers:
            try:
                results[layer.kind.value] = await layer.adapter.publish(topic, payload, options)
            except Exception as e:
                logger.warning(f"Broadcast via {layer.kind.value} failed: {e}")
                results[layer.kind.value] = False

        return results
