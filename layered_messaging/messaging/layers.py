"""
Layers Module
=============
Ordered broker layers shared by the publish and consume orchestrators.

A layer pairs a broker kind with an adapter and a priority. Layers are
kept sorted by ascending priority; equal priorities keep the order in
which they were added.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Union

from ..core.config import Config, ConnectionConfig
from ..core.exceptions import ConfigError
from ..core.logging_config import get_logger

from .broker import BrokerAdapter, BrokerKind, ConsumerObserver

logger = get_logger(__name__)


@dataclass
class Layer:
    """One broker in the fallback chain."""

    kind: BrokerKind
    adapter: BrokerAdapter
    priority: int = 0


def format_layer_errors(errors: List[tuple]) -> str:
    return " | ".join(f"{kind}: {error}" for kind, error in errors)


class LayeredClient:
    """
    Base class holding the layer list and adapter lifecycle.

    Subclasses add the publish or consume operations and the
    broker-specific builder methods.
    """

    role = "layer"

    def __init__(self, observer: Optional[ConsumerObserver] = None):
        """
        Initialize with no layers.

        Args:
            observer: Passed to adapters created by the builder methods
        """
        self.observer = observer
        self._layers: List[Layer] = []

    @property
    def layers(self) -> List[Layer]:
        """Layers in the order they are tried."""
        return list(self._layers)

    def add_layer(
        self,
        kind: Union[BrokerKind, str],
        adapter: BrokerAdapter,
        priority: int = 0,
    ) -> "LayeredClient":
        """
        Register an adapter as a layer.

        Args:
            kind: Broker kind label
            adapter: Adapter instance
            priority: Lower values are tried first

        Returns:
            self, for chaining
        """
        try:
            kind = BrokerKind(kind)
        except ValueError as e:
            raise ConfigError(f"Unknown broker type: {kind}", field="kind", cause=e) from e

        self._layers.append(Layer(kind=kind, adapter=adapter, priority=priority))
        # list.sort is stable, so equal priorities keep registration order
        self._layers.sort(key=lambda layer: layer.priority)
        logger.debug(f"Added {kind.value} {self.role} layer with priority {priority}")
        return self

    def set_redis(
        self,
        host: str,
        port: int = 6379,
        password: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        priority: int = 0,
        use_streams: bool = True,
    ) -> "LayeredClient":
        """
        Add a Redis layer.

        Args:
            host: Redis host
            port: Redis port
            password: Password, sent only when non-empty
            options: database, timeout
            priority: Layer priority
            use_streams: Streams instead of Pub/Sub

        Returns:
            self, for chaining
        """
        from .redis_broker import RedisAdapter

        config = ConnectionConfig(
            host=host, port=port, password=password, options=dict(options or {})
        )
        adapter = RedisAdapter(config, use_streams=use_streams, observer=self.observer)
        return self.add_layer(BrokerKind.REDIS, adapter, priority)

    def _require_layers(self) -> None:
        if not self._layers:
            raise ConfigError(
                f"No {self.role}s configured. "
                "Use set_redis(), set_kafka(), set_rabbitmq() or add_layer()."
            )

    def _apply_redis_config(self, config: Config) -> None:
        if config.redis is None:
            return
        connection = config.redis.connection
        self.set_redis(
            connection.host,
            port=connection.port,
            password=connection.password,
            options=connection.options,
            priority=config.redis.priority,
            use_streams=config.redis_use_streams,
        )

    async def disconnect(self) -> None:
        """Disconnect every layer's adapter."""
        for layer in self._layers:
            await layer.adapter.disconnect()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def __repr__(self) -> str:
        kinds = ", ".join(f"{layer.kind.value}:{layer.priority}" for layer in self._layers)
        return f"{self.__class__.__name__}([{kinds}])"
