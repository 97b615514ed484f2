"""
RabbitMQ Broker Module
======================
Queue-with-routing adapter built on aio-pika.

Messages are published to one exchange declared at connect time.
Consuming declares a queue, binds it to that exchange and polls it with
basic.get. The consumer sleeps between empty polls because basic.get
does not block. A message whose handler fails is negatively
acknowledged with requeue, so it will be redelivered.
"""

from datetime import datetime
from typing import Optional, Dict, Any

from ..core.config import (
    ConnectionConfig,
    ConsumeOptions,
    ConsumeOptionsLike,
    PublishOptionsLike,
    resolve_consume_options,
    resolve_publish_options,
)
from ..core.exceptions import (
    BrokerConnectionError,
    ConfigError,
    ConsumeError,
    PublishError,
)

from .broker import (
    BrokerAdapter,
    BrokerKind,
    ConsumerObserver,
    ExchangeConfig,
    MessageCallback,
    QueueConfig,
    invoke_handler,
)


def _transport_errors() -> tuple:
    from aio_pika.exceptions import AMQPError

    return (AMQPError, ConnectionError)


def _epoch(value: Any) -> Any:
    if isinstance(value, datetime):
        return int(value.timestamp())
    return value


class RabbitMQAdapter(BrokerAdapter):
    """
    RabbitMQ broker adapter.

    Uses aio-pika for async RabbitMQ communication.
    """

    kind = BrokerKind.RABBITMQ

    def __init__(
        self,
        config: ConnectionConfig,
        queue_name: Optional[str] = None,
        exchange: Optional[ExchangeConfig] = None,
        queue_config: Optional[QueueConfig] = None,
        observer: Optional[ConsumerObserver] = None,
    ):
        """
        Initialize RabbitMQ adapter.

        Args:
            config: Connection configuration (options["vhost"] selects the vhost)
            queue_name: Queue to consume from (required for consuming)
            exchange: Exchange published to and bound against
            queue_config: Queue declaration settings
            observer: Sink for consumer loop events
        """
        super().__init__(config, observer)
        self.queue_name = queue_name
        self.exchange_config = exchange or ExchangeConfig()
        self.queue_config = queue_config or QueueConfig()
        self._connection = None
        self._channel = None
        self._exchange = None

    @property
    def is_connected(self) -> bool:
        return (
            self._connected
            and self._connection is not None
            and not self._connection.is_closed
        )

    async def connect(self) -> None:
        """Open connection and channel, then declare the exchange."""
        if self.is_connected:
            return

        connection = None
        try:
            import aio_pika

            connection = await aio_pika.connect_robust(
                host=self.config.host,
                port=self.config.port,
                login=self.config.username or "guest",
                password=self.config.password or "guest",
                virtualhost=self.config.options.get("vhost", "/"),
                timeout=self.config.options.get("timeout"),
            )
            channel = await connection.channel()
            exchange = await self._declare_exchange(channel, self.exchange_config)

        except ImportError as e:
            raise ConfigError(
                "aio-pika is required for RabbitMQ support", field="kind", cause=e
            ) from e
        except Exception as e:
            # A robust connection keeps reconnecting until closed
            if connection is not None:
                await self._close_connection(connection)
            raise BrokerConnectionError(
                f"RabbitMQ connection error: {e}",
                broker=self.kind.value,
                cause=e,
            ) from e

        self._connection = connection
        self._channel = channel
        self._exchange = exchange
        self._connected = True
        self.logger.info(f"Connected to RabbitMQ at {self.config.address}")

    async def _close_connection(self, connection) -> None:
        try:
            await connection.close()
        except Exception as e:
            self.logger.warning(f"Error closing RabbitMQ connection: {e}")

    async def _declare_exchange(self, channel, config: ExchangeConfig):
        import aio_pika

        if not config.name:
            return channel.default_exchange

        exchange_type = getattr(aio_pika.ExchangeType, config.exchange_type.upper())
        exchange = await channel.declare_exchange(
            config.name,
            exchange_type,
            durable=config.durable,
            auto_delete=config.auto_delete,
        )
        self.logger.debug(f"Declared exchange: {config.name}")
        return exchange

    async def disconnect(self) -> None:
        """Close RabbitMQ channel and connection."""
        if self._connection is None:
            return

        try:
            if self._channel and not self._channel.is_closed:
                await self._channel.close()

            if not self._connection.is_closed:
                await self._connection.close()

            self.logger.info("Disconnected from RabbitMQ")

        except Exception as e:
            self.logger.error(f"Error disconnecting from RabbitMQ: {e}")
        finally:
            self._exchange = None
            self._channel = None
            self._connection = None
            self._connected = False

    async def publish(
        self,
        topic: str,
        payload: str,
        options: PublishOptionsLike = None,
    ) -> bool:
        """Publish to the adapter's exchange using the topic as routing key."""
        options = resolve_publish_options(options)
        await self._ensure_connected()

        import aio_pika

        routing_key = options.routing_key or topic

        try:
            amqp_message = aio_pika.Message(
                body=payload.encode("utf-8"),
                content_type=options.content_type,
                delivery_mode=(
                    aio_pika.DeliveryMode.PERSISTENT
                    if options.persistent
                    else aio_pika.DeliveryMode.NOT_PERSISTENT
                ),
                priority=options.priority,
                expiration=options.ttl / 1000 if options.ttl is not None else None,
                headers=options.headers or None,
                correlation_id=options.correlation_id,
            )

            await self._exchange.publish(
                amqp_message,
                routing_key=routing_key,
                mandatory=options.mandatory,
            )

        except Exception as e:
            raise PublishError(
                f"Failed to publish message to RabbitMQ: {e}",
                topic=routing_key,
                cause=e,
            ) from e

        self.logger.debug(f"Published message to {routing_key}")
        return True

    async def _setup_queue(self, routing_key: str, options: ConsumeOptions):
        """Declare the queue, bind it to the exchange and apply QoS."""
        if not self.queue_name:
            raise ConfigError("RabbitMQ consumer requires a queue name", field="queue_name")

        try:
            queue = await self._channel.declare_queue(
                self.queue_name,
                durable=self.queue_config.durable,
                exclusive=self.queue_config.exclusive,
                auto_delete=self.queue_config.auto_delete,
                arguments=self.queue_config.arguments or None,
            )

            if self.exchange_config.name:
                binding_key = options.binding_key or routing_key
                await queue.bind(self._exchange, routing_key=binding_key)
                self.logger.debug(
                    f"Bound {self.queue_name} to {self.exchange_config.name} with key {binding_key}"
                )

            if options.prefetch_count is not None:
                await self._channel.set_qos(prefetch_count=options.prefetch_count)

            return queue

        except Exception as e:
            raise ConsumeError(
                f"Failed to setup RabbitMQ queue: {e}",
                topic=routing_key,
                cause=e,
            ) from e

    async def consume(
        self,
        topic: str,
        callback: MessageCallback,
        options: ConsumeOptionsLike = None,
    ) -> None:
        """
        Poll the bound queue until stopped or idle.

        Transport errors while running raise ConsumeError; after stop()
        they end the session quietly.
        """
        options = resolve_consume_options(options)
        await self._ensure_connected()
        queue = await self._setup_queue(topic, options)

        token = self._begin_session()
        self.observer.session_started(self.kind.value, topic)
        empty_polls = 0
        reason = "stopped"

        try:
            while not token.cancelled:
                message = await queue.get(no_ack=False, fail=False)

                if message is None:
                    empty_polls += 1
                    if self._poll_budget_spent(empty_polls, options):
                        reason = "idle"
                        break
                    await token.wait(options.timeout)
                    continue

                empty_polls = 0
                await self._dispatch(message, callback)

        except _transport_errors() as e:
            reason = "error"
            if not token.cancelled:
                raise ConsumeError(
                    f"Failed to consume from RabbitMQ: {e}",
                    topic=topic,
                    cause=e,
                ) from e

        finally:
            self._end_session(token)
            self.observer.session_finished(self.kind.value, topic, reason)

    def _metadata(self, message) -> Dict[str, Any]:
        delivery_mode = message.delivery_mode
        return {
            "routing_key": message.routing_key,
            "delivery_tag": message.delivery_tag,
            "exchange": message.exchange,
            "headers": dict(message.headers or {}),
            "timestamp": _epoch(message.timestamp),
            "content_type": message.content_type,
            "content_encoding": message.content_encoding,
            "delivery_mode": getattr(delivery_mode, "value", delivery_mode),
            "priority": message.priority,
            "correlation_id": message.correlation_id,
            "reply_to": message.reply_to,
            "expiration": message.expiration,
            "message_id": message.message_id,
            "app_id": message.app_id,
            "user_id": message.user_id,
            "kind": "rabbitmq",
        }

    async def _dispatch(self, message, callback: MessageCallback) -> None:
        metadata = self._metadata(message)

        if message.delivery_tag is None:
            self.observer.message_unprocessable(
                self.kind.value, metadata, "Received message without delivery tag"
            )
            return

        payload = message.body.decode("utf-8", errors="replace")

        try:
            keep_going = await invoke_handler(callback, payload, metadata)
        except Exception as e:
            self.observer.handler_failed(self.kind.value, metadata, e)
            try:
                await message.nack(requeue=True)
            except Exception as nack_error:
                self.observer.ack_failed(self.kind.value, metadata, nack_error)
            return

        try:
            await message.ack()
        except Exception as e:
            self.observer.ack_failed(self.kind.value, metadata, e)

        if not keep_going:
            self.stop()
