"""
Redis Broker Module
===================
Pub/sub and stream adapter built on redis.asyncio.

This module provides:
- Pub/Sub publishing and subscription
- Stream publishing (XADD) with optional trimming
- Plain stream reads from a cursor (XREAD)
- Consumer-group stream reads with explicit acknowledgement (XREADGROUP/XACK)
"""

import json
import time
from typing import Optional, Dict, Any, List, Tuple

from ..core.config import (
    ConnectionConfig,
    ConsumeOptions,
    ConsumeOptionsLike,
    PublishOptions,
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
    CancellationToken,
    ConsumerObserver,
    MessageCallback,
    invoke_handler,
)

StreamEntry = Tuple[str, Dict[str, Any]]


def _stream_entries(response: Any) -> List[StreamEntry]:
    """Flatten an XREAD/XREADGROUP reply (RESP2 list or RESP3 dict)."""
    if not response:
        return []

    streams = response.items() if isinstance(response, dict) else response
    entries: List[StreamEntry] = []
    for _stream, messages in streams:
        for entry_id, fields in messages:
            entries.append((entry_id, fields or {}))
    return entries


def _entry_payload(fields: Dict[str, Any]) -> str:
    if "message" in fields:
        return fields["message"]
    return json.dumps(fields)


class RedisAdapter(BrokerAdapter):
    """
    Redis broker adapter.

    Uses redis.asyncio. Streams are the default transport; pass
    use_streams=False for Pub/Sub.
    """

    kind = BrokerKind.REDIS

    def __init__(
        self,
        config: ConnectionConfig,
        use_streams: bool = True,
        observer: Optional[ConsumerObserver] = None,
    ):
        """
        Initialize Redis adapter.

        Args:
            config: Connection configuration (options: database, timeout)
            use_streams: Use Redis Streams instead of Pub/Sub
            observer: Sink for consumer loop events
        """
        super().__init__(config, observer)
        self.use_streams = use_streams
        self._client = None

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """Open the client and verify it with PING."""
        if self.is_connected:
            return

        try:
            from redis.asyncio import Redis

            client = Redis(
                host=self.config.host,
                port=self.config.port,
                username=self.config.username,
                password=self.config.password or None,
                db=int(self.config.options.get("database", 0)),
                socket_connect_timeout=self.config.options.get("timeout", 2.0),
                decode_responses=True,
            )
            await client.ping()

        except ImportError as e:
            raise ConfigError(
                "redis is required for Redis support", field="kind", cause=e
            ) from e
        except Exception as e:
            raise BrokerConnectionError(
                f"Redis connection error: {e}",
                broker=self.kind.value,
                cause=e,
            ) from e

        self._client = client
        self._connected = True
        self.logger.info(f"Connected to Redis at {self.config.address}")

    async def disconnect(self) -> None:
        """Close the Redis client."""
        if self._client is None:
            return

        try:
            await self._client.aclose()
            self.logger.info("Disconnected from Redis")
        except Exception as e:
            self.logger.error(f"Error disconnecting from Redis: {e}")
        finally:
            self._client = None
            self._connected = False

    async def publish(
        self,
        topic: str,
        payload: str,
        options: PublishOptionsLike = None,
    ) -> bool:
        """Publish to a stream (XADD) or a Pub/Sub channel."""
        from redis.exceptions import RedisError

        options = resolve_publish_options(options)
        await self._ensure_connected()

        try:
            if self.use_streams:
                return await self._publish_to_stream(topic, payload, options)
            return await self._publish_to_channel(topic, payload)

        except RedisError as e:
            raise PublishError(
                f"Failed to publish message to Redis: {e}",
                topic=topic,
                cause=e,
            ) from e

    async def _publish_to_channel(self, channel: str, payload: str) -> bool:
        receivers = await self._client.publish(channel, payload)
        self.logger.debug(f"Published message to channel {channel} ({receivers} receivers)")
        # Zero receivers is still a successful publish
        return receivers >= 0

    async def _publish_to_stream(
        self,
        stream: str,
        payload: str,
        options: PublishOptions,
    ) -> bool:
        fields = {"message": payload}
        fields.update(options.fields)

        if options.maxlen:
            entry_id = await self._client.xadd(
                stream, fields, maxlen=options.maxlen, approximate=True
            )
        else:
            entry_id = await self._client.xadd(stream, fields)

        self.logger.debug(f"Added entry {entry_id} to stream {stream}")
        return bool(entry_id)

    async def consume(
        self,
        topic: str,
        callback: MessageCallback,
        options: ConsumeOptionsLike = None,
    ) -> None:
        """
        Consume from Pub/Sub, a stream, or a stream consumer group.

        A consumer group is used when both group and consumer_name are set.
        Redis errors while running raise ConsumeError.
        """
        from redis.exceptions import RedisError

        options = resolve_consume_options(options)
        await self._ensure_connected()

        token = self._begin_session()
        self.observer.session_started(self.kind.value, topic)
        reason = "stopped"

        try:
            if not self.use_streams:
                reason = await self._consume_channel(topic, callback, options, token)
            elif options.uses_consumer_group:
                reason = await self._consume_group(topic, callback, options, token)
            else:
                reason = await self._consume_stream(topic, callback, options, token)

        except RedisError as e:
            reason = "error"
            if not token.cancelled:
                raise ConsumeError(
                    f"Failed to consume from Redis: {e}",
                    topic=topic,
                    cause=e,
                ) from e

        finally:
            self._end_session(token)
            self.observer.session_finished(self.kind.value, topic, reason)

    async def _handle(
        self,
        callback: MessageCallback,
        payload: str,
        metadata: Dict[str, Any],
    ) -> Optional[bool]:
        """Run the handler; None means it raised."""
        try:
            return await invoke_handler(callback, payload, metadata)
        except Exception as e:
            self.observer.handler_failed(self.kind.value, metadata, e)
            return None

    async def _consume_channel(
        self,
        channel: str,
        callback: MessageCallback,
        options: ConsumeOptions,
        token: CancellationToken,
    ) -> str:
        pubsub = self._client.pubsub()
        subscribed = False
        empty_polls = 0

        try:
            await pubsub.subscribe(channel)

            while not token.cancelled:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=False,
                    timeout=options.timeout,
                )
                kind = message.get("type") if message else None

                if kind == "subscribe":
                    subscribed = True
                    continue

                if kind != "message":
                    # Polls before the subscribe confirmation are not counted
                    if subscribed:
                        empty_polls += 1
                        if self._poll_budget_spent(empty_polls, options):
                            return "idle"
                    continue

                subscribed = True
                empty_polls = 0
                metadata = {
                    "channel": message["channel"],
                    "timestamp": int(time.time()),
                    "kind": "pubsub",
                }

                if await self._handle(callback, message["data"], metadata) is False:
                    self.stop()

            return "stopped"

        finally:
            try:
                await pubsub.unsubscribe(channel)
            except Exception as e:
                self.observer.poll_failed(self.kind.value, channel, e)
            finally:
                await pubsub.aclose()

    async def _consume_stream(
        self,
        stream: str,
        callback: MessageCallback,
        options: ConsumeOptions,
        token: CancellationToken,
    ) -> str:
        last_id = options.start_id
        empty_polls = 0

        while not token.cancelled:
            response = await self._client.xread(
                {stream: last_id},
                count=options.count,
                block=options.block_ms or None,
            )
            entries = _stream_entries(response)

            if not entries:
                empty_polls += 1
                if self._poll_budget_spent(empty_polls, options):
                    return "idle"
                continue

            empty_polls = 0
            for entry_id, fields in entries:
                if token.cancelled:
                    break

                metadata = {
                    "id": entry_id,
                    "stream": stream,
                    "timestamp": int(time.time()),
                    "kind": "stream",
                }

                keep_going = await self._handle(callback, _entry_payload(fields), metadata)
                # The cursor moves past failed entries too
                last_id = entry_id

                if keep_going is False:
                    self.stop()
                    break

        return "stopped"

    async def _ensure_group(self, stream: str, group: str) -> None:
        from redis.exceptions import ResponseError

        try:
            await self._client.xgroup_create(stream, group, id="0", mkstream=True)
            self.logger.info(f"Created consumer group {group} on {stream}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise ConsumeError(
                    f"Failed to create consumer group '{group}': {e}",
                    topic=stream,
                    cause=e,
                ) from e

    async def _consume_group(
        self,
        stream: str,
        callback: MessageCallback,
        options: ConsumeOptions,
        token: CancellationToken,
    ) -> str:
        group = options.group
        consumer = options.consumer_name
        await self._ensure_group(stream, group)
        empty_polls = 0

        while not token.cancelled:
            response = await self._client.xreadgroup(
                group,
                consumer,
                {stream: ">"},
                count=options.count,
                block=options.block_ms or None,
            )
            entries = _stream_entries(response)

            if not entries:
                empty_polls += 1
                if self._poll_budget_spent(empty_polls, options):
                    return "idle"
                continue

            empty_polls = 0
            for entry_id, fields in entries:
                if token.cancelled:
                    break

                metadata = {
                    "id": entry_id,
                    "stream": stream,
                    "group": group,
                    "consumer": consumer,
                    "timestamp": int(time.time()),
                    "kind": "stream_group",
                }

                keep_going = await self._handle(callback, _entry_payload(fields), metadata)
                if keep_going is None:
                    # Left in the group's pending entries list
                    continue

                try:
                    await self._client.xack(stream, group, entry_id)
                except Exception as e:
                    self.observer.ack_failed(self.kind.value, metadata, e)

                if not keep_going:
                    self.stop()
                    break

        return "stopped"
