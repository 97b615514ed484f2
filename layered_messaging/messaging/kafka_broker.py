"""
Kafka Broker Module
===================
Partitioned-log adapter built on aiokafka.

Publishing goes through one shared producer. Consuming runs a consumer
group member with auto-commit disabled. Each delivered record's offset
is committed after the handler runs, including when the handler fails,
so a failing handler does not cause redelivery.
"""

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
    MessageCallback,
    invoke_handler,
)


class KafkaAdapter(BrokerAdapter):
    """
    Kafka broker adapter.

    Uses aiokafka for async Kafka communication.
    """

    kind = BrokerKind.KAFKA

    def __init__(
        self,
        config: ConnectionConfig,
        group_id: Optional[str] = None,
        observer: Optional[ConsumerObserver] = None,
    ):
        """
        Initialize Kafka adapter.

        Args:
            config: Connection configuration; options are passed to the
                aiokafka clients as keyword arguments
            group_id: Consumer group (required for consuming)
            observer: Sink for consumer loop events
        """
        super().__init__(config, observer)
        self.group_id = group_id
        self._producer = None

    def _client_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"bootstrap_servers": self.config.address}

        if self.config.username is not None and self.config.password is not None:
            from aiokafka.helpers import create_ssl_context

            kwargs.update(
                security_protocol="SASL_SSL",
                sasl_mechanism="PLAIN",
                sasl_plain_username=self.config.username,
                sasl_plain_password=self.config.password,
                ssl_context=create_ssl_context(),
            )

        kwargs.update(self.config.options)
        return kwargs

    async def connect(self) -> None:
        """Start the shared Kafka producer."""
        if self._connected:
            return

        try:
            from aiokafka import AIOKafkaProducer

            producer = AIOKafkaProducer(**self._client_kwargs())
            await producer.start()

        except ImportError as e:
            raise ConfigError(
                "aiokafka is required for Kafka support", field="kind", cause=e
            ) from e
        except Exception as e:
            raise BrokerConnectionError(
                f"Failed to create Kafka producer: {e}",
                broker=self.kind.value,
                cause=e,
            ) from e

        self._producer = producer
        self._connected = True
        self.logger.info(f"Connected to Kafka at {self.config.address}")

    async def disconnect(self) -> None:
        """Flush and stop the Kafka producer."""
        if self._producer is None or not self._connected:
            return

        try:
            await self._producer.flush()
            await self._producer.stop()
            self.logger.info("Disconnected from Kafka")
        except Exception as e:
            self.logger.error(f"Error disconnecting from Kafka: {e}")
        finally:
            self._producer = None
            self._connected = False

    async def publish(
        self,
        topic: str,
        payload: str,
        options: PublishOptionsLike = None,
    ) -> bool:
        """Publish a record, optionally pinned to a partition or keyed."""
        options = resolve_publish_options(options)
        await self._ensure_connected()

        headers = [
            (name, str(value).encode("utf-8")) for name, value in options.headers.items()
        ]

        try:
            await self._producer.send_and_wait(
                topic,
                payload.encode("utf-8"),
                key=options.key.encode("utf-8") if options.key is not None else None,
                partition=options.partition,
                headers=headers or None,
            )
        except Exception as e:
            raise PublishError(
                f"Failed to publish message to Kafka topic '{topic}': {e}",
                topic=topic,
                cause=e,
            ) from e

        self.logger.debug(f"Published message to {topic}")
        return True

    async def _create_consumer(self, topic: str):
        """Create, start and subscribe a consumer group member."""
        if not self.group_id:
            raise ConfigError("Kafka consumer requires a group_id", field="group_id")

        try:
            from aiokafka import AIOKafkaConsumer

            consumer = AIOKafkaConsumer(
                topic,
                group_id=self.group_id,
                enable_auto_commit=False,
                auto_offset_reset="earliest",
                **self._client_kwargs(),
            )
            await consumer.start()
            return consumer

        except ImportError as e:
            raise ConfigError(
                "aiokafka is required for Kafka support", field="kind", cause=e
            ) from e
        except Exception as e:
            raise ConsumeError(
                f"Failed to initialize Kafka consumer: {e}",
                topic=topic,
                cause=e,
            ) from e

    async def consume(
        self,
        topic: str,
        callback: MessageCallback,
        options: ConsumeOptionsLike = None,
    ) -> None:
        """
        Poll the topic until stopped or idle.

        Poll errors reported by the client are recovered locally and count
        as empty polls.
        """
        options = resolve_consume_options(options)
        consumer = await self._create_consumer(topic)

        token = self._begin_session()
        self.observer.session_started(self.kind.value, topic)
        empty_polls = 0
        reason = "stopped"

        try:
            while not token.cancelled:
                record = await self._poll(consumer, topic, options)

                if record is None:
                    empty_polls += 1
                    if self._poll_budget_spent(empty_polls, options):
                        reason = "idle"
                        break
                    continue

                empty_polls = 0
                await self._dispatch(consumer, record, callback)

        finally:
            self._end_session(token)
            await self._close_consumer(consumer)
            self.observer.session_finished(self.kind.value, topic, reason)

    async def _poll(self, consumer, topic: str, options: ConsumeOptions):
        from aiokafka.errors import KafkaError

        try:
            batches = await consumer.getmany(
                timeout_ms=int(options.timeout * 1000),
                max_records=1,
            )
        except KafkaError as e:
            if self.is_running:
                self.observer.poll_failed(self.kind.value, topic, e)
            return None

        for records in batches.values():
            if records:
                return records[0]
        return None

    async def _dispatch(self, consumer, record, callback: MessageCallback) -> None:
        metadata = {
            "partition": record.partition,
            "offset": record.offset,
            "timestamp": record.timestamp,
            "key": record.key.decode("utf-8", errors="replace") if record.key is not None else None,
            "topic": record.topic,
            "headers": {
                name: value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
                for name, value in (record.headers or ())
            },
            "kind": "kafka",
        }
        payload = record.value.decode("utf-8", errors="replace") if record.value is not None else ""

        try:
            keep_going = await invoke_handler(callback, payload, metadata)
        except Exception as e:
            self.observer.handler_failed(self.kind.value, metadata, e)
            keep_going = True

        await self._commit(consumer, record, metadata)

        if not keep_going:
            self.stop()

    async def _commit(self, consumer, record, metadata: Dict[str, Any]) -> None:
        from aiokafka import TopicPartition

        try:
            await consumer.commit(
                {TopicPartition(record.topic, record.partition): record.offset + 1}
            )
        except Exception as e:
            self.observer.ack_failed(self.kind.value, metadata, e)

    async def _close_consumer(self, consumer) -> None:
        try:
            await consumer.stop()
        except Exception as e:
            self.logger.warning(f"Error stopping Kafka consumer: {e}")
