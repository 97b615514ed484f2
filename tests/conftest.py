"""
Pytest configuration and fixtures for layered messaging tests.

Broker clients are never contacted: adapters are either replaced by
FakeAdapter or have their client objects swapped for mocks.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
from unittest.mock import MagicMock

import pytest

from layered_messaging.core.config import ConnectionConfig, ConsumeOptions
from layered_messaging.messaging.broker import (
    BrokerAdapter,
    BrokerKind,
    ConsumerObserver,
    invoke_handler,
)


class FakeAdapter(BrokerAdapter):
    """In-memory adapter recording every call it receives."""

    def __init__(
        self,
        kind: BrokerKind = BrokerKind.REDIS,
        result: bool = True,
        error: Optional[Exception] = None,
        consume_error: Optional[Exception] = None,
        deliveries: Sequence[Tuple[str, Dict[str, Any]]] = (),
    ):
        self.kind = kind
        super().__init__(ConnectionConfig(host="localhost", port=1))
        self.result = result
        self.error = error
        self.consume_error = consume_error
        self.deliveries = list(deliveries)
        self.published: List[tuple] = []
        self.consumed: List[tuple] = []
        self.disconnected = False

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self.disconnected = True
        self._connected = False

    async def publish(self, topic, payload, options=None) -> bool:
        self.published.append((topic, payload, options))
        if self.error is not None:
            raise self.error
        return self.result

    async def consume(self, topic, callback, options=None) -> None:
        self.consumed.append((topic, options))
        token = self._begin_session()
        try:
            for payload, metadata in self.deliveries:
                if token.cancelled:
                    break
                if not await invoke_handler(callback, payload, metadata):
                    self.stop()
            if self.consume_error is not None:
                raise self.consume_error
        finally:
            self._end_session(token)


@pytest.fixture
def fake_adapter_factory():
    """Build FakeAdapter instances."""
    return FakeAdapter


@pytest.fixture
def connection_config():
    """Connection settings pointing at a local broker."""
    return ConnectionConfig(host="localhost", port=6379)


@pytest.fixture
def observer():
    """Observer mock recording consumer loop events."""
    return MagicMock(spec=ConsumerObserver)


@pytest.fixture
def short_session():
    """Consume options that end a session after two empty polls."""
    return ConsumeOptions(timeout=0, max_empty_polls=2, block_ms=0)
