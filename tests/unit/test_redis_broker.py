"""Unit tests for the Redis adapter with a mocked redis.asyncio client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from layered_messaging.core.config import ConnectionConfig, ConsumeOptions, PublishOptions
from layered_messaging.core.exceptions import (
    BrokerConnectionError,
    ConsumeError,
    PublishError,
)
from layered_messaging.messaging.redis_broker import RedisAdapter


def stream_reply(stream, *entries):
    return [[stream, list(entries)]]


@pytest.fixture
def client():
    client = MagicMock()
    for name in ("publish", "xadd", "xread", "xreadgroup", "xgroup_create", "xack", "aclose"):
        setattr(client, name, AsyncMock())
    return client


@pytest.fixture
def adapter(connection_config, observer, client):
    adapter = RedisAdapter(connection_config, observer=observer)
    adapter._client = client
    adapter._connected = True
    return adapter


@pytest.fixture
def group_session():
    return ConsumeOptions(
        timeout=0, max_empty_polls=2, block_ms=0, group="workers", consumer_name="worker-1"
    )


class Recorder:
    def __init__(self, fail_on=(), stop_on=()):
        self.fail_on = set(fail_on)
        self.stop_on = set(stop_on)
        self.received = []

    def __call__(self, message, metadata):
        self.received.append((message, metadata))
        if message in self.fail_on:
            raise RuntimeError(f"cannot handle {message}")
        return message not in self.stop_on


class TestRedisConnect:
    """Test client creation and PING."""

    async def test_connect_settings(self, observer):
        adapter = RedisAdapter(
            ConnectionConfig(
                host="cache", port=6380, password="", options={"database": 3, "timeout": 0.5}
            ),
            observer=observer,
        )

        with patch("redis.asyncio.Redis") as redis_class:
            redis_class.return_value.ping = AsyncMock(return_value=True)
            await adapter.connect()

        kwargs = redis_class.call_args.kwargs
        assert kwargs["host"] == "cache"
        assert kwargs["port"] == 6380
        assert kwargs["password"] is None
        assert kwargs["db"] == 3
        assert kwargs["socket_connect_timeout"] == 0.5
        assert kwargs["decode_responses"] is True
        assert adapter.is_connected is True

    async def test_ping_failure(self, connection_config):
        adapter = RedisAdapter(connection_config)

        with patch("redis.asyncio.Redis") as redis_class:
            redis_class.return_value.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

            with pytest.raises(BrokerConnectionError) as exc_info:
                await adapter.connect()

        assert exc_info.value.broker == "redis"
        assert adapter.is_connected is False

    async def test_disconnect(self, adapter, client):
        await adapter.disconnect()

        client.aclose.assert_awaited_once()
        assert adapter.is_connected is False


class TestRedisPublish:
    """Test stream and Pub/Sub publishing."""

    async def test_stream_publish(self, adapter, client):
        client.xadd.return_value = "1700000000000-0"

        result = await adapter.publish(
            "orders", "hello", PublishOptions(fields={"source": "api"}, maxlen=1000)
        )

        assert result is True
        client.xadd.assert_awaited_once_with(
            "orders", {"message": "hello", "source": "api"}, maxlen=1000, approximate=True
        )

    async def test_stream_publish_without_trim(self, adapter, client):
        client.xadd.return_value = "1-0"

        await adapter.publish("orders", "hello")

        client.xadd.assert_awaited_once_with("orders", {"message": "hello"})

    async def test_pubsub_publish_without_receivers(self, adapter, client):
        """Test zero receivers still counts as published."""
        adapter.use_streams = False
        client.publish.return_value = 0

        assert await adapter.publish("news", "hello") is True
        client.publish.assert_awaited_once_with("news", "hello")

    async def test_publish_failure(self, adapter, client):
        client.xadd.side_effect = RedisConnectionError("connection lost")

        with pytest.raises(PublishError) as exc_info:
            await adapter.publish("orders", "hello")

        assert exc_info.value.topic == "orders"


class TestRedisStreamConsume:
    """Test plain stream reads."""

    async def test_reads_from_cursor(self, adapter, client, observer, short_session):
        client.xread.side_effect = [
            stream_reply("orders", ("1-0", {"message": "first"}), ("1-1", {"a": "b"})),
            [],
            [],
        ]
        recorder = Recorder()

        await adapter.consume("orders", recorder, short_session)

        assert [message for message, _ in recorder.received] == ["first", '{"a": "b"}']
        metadata = recorder.received[0][1]
        assert metadata["id"] == "1-0"
        assert metadata["stream"] == "orders"
        assert metadata["kind"] == "stream"
        assert "timestamp" in metadata
        assert client.xread.await_args_list[0].args[0] == {"orders": "0"}
        assert client.xread.await_args_list[1].args[0] == {"orders": "1-1"}
        observer.session_finished.assert_called_once_with("redis", "orders", "idle")

    async def test_cursor_moves_past_failed_entry(self, adapter, client, observer, short_session):
        client.xread.side_effect = [
            stream_reply("orders", ("1-0", {"message": "bad"})),
            [],
            [],
        ]

        await adapter.consume("orders", Recorder(fail_on={"bad"}), short_session)

        observer.handler_failed.assert_called_once()
        assert client.xread.await_args_list[1].args[0] == {"orders": "1-0"}

    async def test_false_stops(self, adapter, client, short_session):
        client.xread.side_effect = [
            stream_reply("orders", ("1-0", {"message": "stop"}), ("1-1", {"message": "next"})),
        ]
        recorder = Recorder(stop_on={"stop"})

        await adapter.consume("orders", recorder, short_session)

        assert len(recorder.received) == 1
        assert client.xread.await_count == 1

    async def test_start_id_and_block(self, adapter, client):
        client.xread.side_effect = [[]]
        options = ConsumeOptions(start_id="$", block_ms=250, count=10, max_empty_polls=1)

        await adapter.consume("orders", Recorder(), options)

        client.xread.assert_awaited_once_with({"orders": "$"}, count=10, block=250)

    async def test_resp3_reply(self, adapter, client, short_session):
        client.xread.side_effect = [{"orders": [["1-0", {"message": "hi"}]]}, [], []]
        recorder = Recorder()

        await adapter.consume("orders", recorder, short_session)

        assert recorder.received[0][0] == "hi"

    async def test_transport_error_raises(self, adapter, client, observer, short_session):
        client.xread.side_effect = RedisConnectionError("connection reset")

        with pytest.raises(ConsumeError, match="connection reset"):
            await adapter.consume("orders", Recorder(), short_session)

        observer.session_finished.assert_called_once_with("redis", "orders", "error")

    async def test_stop_seen_inside_batch(self, adapter, client, short_session):
        """Test stop() during a batch skips the remaining entries."""
        client.xread.side_effect = [
            stream_reply("orders", ("1-0", {"message": "a"}), ("1-1", {"message": "b"})),
        ]
        received = []

        def handler(message, metadata):
            received.append(message)
            adapter.stop()
            return True

        await adapter.consume("orders", handler, short_session)

        assert received == ["a"]
        assert client.xread.await_count == 1

    async def test_idle_after_max_empty_polls(self, adapter, client, observer):
        handler = MagicMock(return_value=True)
        client.xread.side_effect = [[], [], []]

        await adapter.consume("orders", handler, ConsumeOptions(max_empty_polls=3, block_ms=0))

        assert client.xread.await_count == 3
        handler.assert_not_called()
        observer.session_finished.assert_called_once_with("redis", "orders", "idle")


class TestRedisGroupConsume:
    """Test consumer-group stream reads."""

    async def test_acks_only_handled_entries(self, adapter, client, group_session):
        """Test a failed entry stays pending while others are acked."""
        client.xreadgroup.side_effect = [
            stream_reply("orders", ("1-0", {"message": "bad"}), ("1-1", {"message": "good"})),
            [],
            [],
        ]
        recorder = Recorder(fail_on={"bad"})

        await adapter.consume("orders", recorder, group_session)

        client.xgroup_create.assert_awaited_once_with("orders", "workers", id="0", mkstream=True)
        client.xack.assert_awaited_once_with("orders", "workers", "1-1")
        metadata = recorder.received[1][1]
        assert metadata["group"] == "workers"
        assert metadata["consumer"] == "worker-1"
        assert metadata["kind"] == "stream_group"

    async def test_reads_new_entries(self, adapter, client, group_session):
        client.xreadgroup.side_effect = [[], []]

        await adapter.consume("orders", Recorder(), group_session)

        client.xreadgroup.assert_awaited_with(
            "workers", "worker-1", {"orders": ">"}, count=1, block=None
        )

    async def test_false_acks_then_stops(self, adapter, client, group_session):
        client.xreadgroup.side_effect = [
            stream_reply("orders", ("1-0", {"message": "stop"}), ("1-1", {"message": "next"})),
        ]

        await adapter.consume("orders", Recorder(stop_on={"stop"}), group_session)

        client.xack.assert_awaited_once_with("orders", "workers", "1-0")
        assert adapter.is_running is False

    async def test_existing_group_ignored(self, adapter, client, group_session):
        client.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
        client.xreadgroup.side_effect = [[], []]

        await adapter.consume("orders", Recorder(), group_session)

        assert client.xreadgroup.await_count == 2

    async def test_group_create_error(self, adapter, client, group_session):
        client.xgroup_create.side_effect = ResponseError("WRONGTYPE Operation against a key")

        with pytest.raises(ConsumeError, match="workers"):
            await adapter.consume("orders", Recorder(), group_session)

        client.xreadgroup.assert_not_awaited()

    async def test_ack_failure_reported(self, adapter, client, observer, group_session):
        client.xreadgroup.side_effect = [stream_reply("orders", ("1-0", {"message": "a"})), [], []]
        client.xack.side_effect = RedisConnectionError("lost")

        await adapter.consume("orders", Recorder(), group_session)

        observer.ack_failed.assert_called_once()

    async def test_stop_seen_inside_batch(self, adapter, client, group_session):
        client.xreadgroup.side_effect = [
            stream_reply("orders", ("1-0", {"message": "a"}), ("1-1", {"message": "b"})),
        ]

        def handler(message, metadata):
            adapter.stop()
            return True

        await adapter.consume("orders", handler, group_session)

        client.xack.assert_awaited_once_with("orders", "workers", "1-0")
        assert client.xreadgroup.await_count == 1

    async def test_idle_after_max_empty_polls(self, adapter, client):
        handler = MagicMock(return_value=True)
        client.xreadgroup.side_effect = [[], [], []]
        options = ConsumeOptions(
            max_empty_polls=3, block_ms=0, group="workers", consumer_name="worker-1"
        )

        await adapter.consume("orders", handler, options)

        assert client.xreadgroup.await_count == 3
        handler.assert_not_called()
        client.xack.assert_not_awaited()


class TestRedisPubSubConsume:
    """Test Pub/Sub subscription."""

    @pytest.fixture
    def pubsub(self, client):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = AsyncMock()
        client.pubsub.return_value = pubsub
        return pubsub

    async def test_delivers_channel_messages(self, adapter, pubsub, short_session):
        adapter.use_streams = False
        pubsub.get_message.side_effect = [
            {"type": "message", "channel": "news", "data": "hello"},
            None,
            None,
        ]
        recorder = Recorder()

        await adapter.consume("news", recorder, short_session)

        message, metadata = recorder.received[0]
        assert message == "hello"
        assert metadata["channel"] == "news"
        assert metadata["kind"] == "pubsub"
        pubsub.subscribe.assert_awaited_once_with("news")
        pubsub.get_message.assert_awaited_with(ignore_subscribe_messages=False, timeout=0)
        pubsub.unsubscribe.assert_awaited_once_with("news")
        pubsub.aclose.assert_awaited_once()

    async def test_handler_error_keeps_consuming(self, adapter, pubsub, observer, short_session):
        adapter.use_streams = False
        pubsub.get_message.side_effect = [
            {"type": "message", "channel": "news", "data": "bad"},
            {"type": "message", "channel": "news", "data": "good"},
            None,
            None,
        ]
        recorder = Recorder(fail_on={"bad"})

        await adapter.consume("news", recorder, short_session)

        assert [message for message, _ in recorder.received] == ["bad", "good"]
        observer.handler_failed.assert_called_once()

    async def test_false_stops(self, adapter, pubsub, short_session):
        adapter.use_streams = False
        pubsub.get_message.side_effect = [
            {"type": "message", "channel": "news", "data": "stop"},
        ]

        await adapter.consume("news", Recorder(stop_on={"stop"}), short_session)

        assert pubsub.get_message.await_count == 1
        pubsub.unsubscribe.assert_awaited_once()

    async def test_subscribe_confirmation_not_counted(self, adapter, pubsub):
        """Test the subscribe reply does not use up the idle budget."""
        adapter.use_streams = False
        pubsub.get_message.side_effect = [
            {"type": "subscribe", "channel": "news", "data": 1},
            {"type": "message", "channel": "news", "data": "hi"},
            None,
        ]
        recorder = Recorder()

        await adapter.consume("news", recorder, ConsumeOptions(timeout=0, max_empty_polls=1))

        assert [message for message, _ in recorder.received] == ["hi"]
        assert pubsub.get_message.await_count == 3

    async def test_idle_after_max_empty_polls(self, adapter, pubsub, observer):
        adapter.use_streams = False
        handler = MagicMock(return_value=True)
        pubsub.get_message.side_effect = [
            {"type": "subscribe", "channel": "news", "data": 1},
            None,
            None,
            None,
        ]

        await adapter.consume("news", handler, ConsumeOptions(timeout=0, max_empty_polls=3))

        assert pubsub.get_message.await_count == 4
        handler.assert_not_called()
        observer.session_finished.assert_called_once_with("redis", "news", "idle")

    async def test_closed_when_unsubscribe_fails(self, adapter, pubsub, observer, short_session):
        """Test the original error surfaces and the pubsub is still closed."""
        adapter.use_streams = False
        pubsub.get_message.side_effect = RedisConnectionError("reset")
        pubsub.unsubscribe.side_effect = RedisConnectionError("reset")

        with pytest.raises(ConsumeError, match="reset"):
            await adapter.consume("news", Recorder(), short_session)

        pubsub.aclose.assert_awaited_once()
        observer.poll_failed.assert_called_once()

    async def test_closed_when_subscribe_fails(self, adapter, pubsub, short_session):
        adapter.use_streams = False
        pubsub.subscribe.side_effect = RedisConnectionError("refused")

        with pytest.raises(ConsumeError, match="refused"):
            await adapter.consume("news", Recorder(), short_session)

        pubsub.get_message.assert_not_awaited()
        pubsub.aclose.assert_awaited_once()
