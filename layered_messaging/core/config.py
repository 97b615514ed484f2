"""
Configuration Management Module
===============================
Connection settings, typed publish/consume options and environment loading.

This module provides:
- Validated broker connection settings
- Typed publish and consume option structs
- Environment-based configuration
- Configuration singleton pattern
"""

import os
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import Optional, Dict, Any, List, Mapping, Tuple, Union
from functools import lru_cache

from .exceptions import ConfigError


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Broker connection settings.

    Host and port are checked at construction so a bad address fails
    before any network activity.
    """

    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigError("Host cannot be empty", field="host")

        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ConfigError(
                f"Port must be an integer, got {self.port!r}", field="port"
            )

        if self.port <= 0 or self.port > 65535:
            raise ConfigError(
                f"Port must be between 1 and 65535, got {self.port}", field="port"
            )

    @classmethod
    def from_env(
        cls,
        prefix: str,
        default_port: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> "ConnectionConfig":
        """
        Create configuration from environment variables.

        Reads {PREFIX}_HOST, {PREFIX}_PORT, {PREFIX}_USER (or
        {PREFIX}_USERNAME) and {PREFIX}_PASSWORD.

        Args:
            prefix: Variable prefix (e.g. MESSAGING_REDIS)
            default_port: Port used when {PREFIX}_PORT is unset
            options: Adapter-specific options

        Returns:
            ConnectionConfig: Validated configuration
        """
        port = os.getenv(f"{prefix}_PORT")
        try:
            port_value = int(port) if port else (default_port or 0)
        except ValueError as e:
            raise ConfigError(
                f"{prefix}_PORT must be an integer, got {port!r}",
                field="port",
                cause=e,
            ) from e

        return cls(
            host=os.getenv(f"{prefix}_HOST", "localhost"),
            port=port_value,
            username=os.getenv(f"{prefix}_USER") or os.getenv(f"{prefix}_USERNAME"),
            password=os.getenv(f"{prefix}_PASSWORD"),
            options=dict(options or {}),
        )

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "ConnectionConfig":
        """Create configuration from a plain mapping."""
        return cls(
            host=config.get("host", "localhost"),
            port=config.get("port", 0),
            username=config.get("username", config.get("user")),
            password=config.get("password"),
            options=dict(config.get("options") or {}),
        )

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def parse_broker_address(brokers: str, default_port: int) -> Tuple[str, int]:
    """
    Split a "host:port" broker address.

    Args:
        brokers: Address such as "kafka:9092"
        default_port: Port used when the address carries none

    Returns:
        Tuple[str, int]: Host and port
    """
    host, _, port = brokers.partition(":")
    if not port:
        return host, default_port
    try:
        return host, int(port)
    except ValueError as e:
        raise ConfigError(
            f"Invalid broker address: {brokers!r}", field="brokers", cause=e
        ) from e


def _pick(cls, values: Mapping[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in dataclass_fields(cls)}
    return {key: value for key, value in values.items() if key in known}


@dataclass
class PublishOptions:
    """
    Options for a single publish call.

    Each adapter reads the fields that apply to its broker and ignores
    the rest.
    """

    # RabbitMQ message attributes
    priority: Optional[int] = None
    ttl: Optional[int] = None  # milliseconds
    headers: Dict[str, Any] = field(default_factory=dict)
    content_type: str = "application/json"
    persistent: bool = True
    correlation_id: Optional[str] = None
    routing_key: Optional[str] = None
    mandatory: bool = False

    # Kafka
    partition: Optional[int] = None
    key: Optional[str] = None

    # Redis streams
    fields: Dict[str, Any] = field(default_factory=dict)
    maxlen: Optional[int] = None

    def __post_init__(self) -> None:
        if self.priority is not None and not 0 <= self.priority <= 9:
            raise ConfigError(
                f"Priority must be between 0 and 9, got {self.priority}",
                field="priority",
            )

        if self.ttl is not None and self.ttl < 0:
            raise ConfigError(f"TTL must be positive, got {self.ttl}", field="ttl")

        if self.maxlen is not None and self.maxlen < 0:
            raise ConfigError(
                f"maxlen must be positive, got {self.maxlen}", field="maxlen"
            )

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "PublishOptions":
        """
        Create options from a plain mapping.

        Accepts "metadata" as an alias of "headers" and a nested
        "attributes" mapping of AMQP message properties.
        """
        values = dict(options)

        attributes = values.pop("attributes", None) or {}
        if "expiration" in attributes and "ttl" not in values:
            values["ttl"] = int(attributes["expiration"])
        if "delivery_mode" in attributes and "persistent" not in values:
            values["persistent"] = int(attributes["delivery_mode"]) == 2
        for name in ("content_type", "priority", "correlation_id", "headers"):
            if name in attributes and name not in values:
                values[name] = attributes[name]

        if "headers" not in values and "metadata" in values:
            values["headers"] = values["metadata"]

        if values.get("priority") is not None:
            values["priority"] = int(values["priority"])
        if values.get("ttl") is not None:
            values["ttl"] = int(values["ttl"])

        return cls(**_pick(cls, values))

    def to_dict(self) -> Dict[str, Any]:
        """Return only the fields that differ from their defaults."""
        result = {}
        for f in dataclass_fields(self):
            value = getattr(self, f.name)
            default = f.default_factory() if callable(f.default_factory) else f.default
            if value != default:
                result[f.name] = value
        return result


@dataclass
class ConsumeOptions:
    """Options for a consume session."""

    timeout: float = 1.0  # seconds
    max_empty_polls: Optional[int] = 10

    # Redis streams
    start_id: str = "0"
    block_ms: int = 5000
    group: Optional[str] = None
    consumer_name: Optional[str] = None
    count: int = 1

    # RabbitMQ
    prefetch_count: Optional[int] = None
    binding_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.timeout < 0:
            raise ConfigError(
                f"Timeout must be positive, got {self.timeout}", field="timeout"
            )

        if self.max_empty_polls is not None and self.max_empty_polls < 1:
            raise ConfigError(
                f"max_empty_polls must be at least 1, got {self.max_empty_polls}",
                field="max_empty_polls",
            )

        if self.count < 1:
            raise ConfigError(
                f"count must be at least 1, got {self.count}", field="count"
            )

        if self.block_ms < 0:
            raise ConfigError(
                f"block_ms must be positive, got {self.block_ms}", field="block_ms"
            )

    @property
    def uses_consumer_group(self) -> bool:
        return self.group is not None and self.consumer_name is not None

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "ConsumeOptions":
        """
        Create options from a plain mapping.

        Accepts "block" for "block_ms" and "consumer" for "consumer_name".
        """
        values = dict(options)
        if "block" in values and "block_ms" not in values:
            values["block_ms"] = int(values["block"])
        if "consumer" in values and "consumer_name" not in values:
            values["consumer_name"] = values["consumer"]
        return cls(**_pick(cls, values))


PublishOptionsLike = Union[PublishOptions, Mapping[str, Any], None]
ConsumeOptionsLike = Union[ConsumeOptions, Mapping[str, Any], None]


def resolve_publish_options(options: PublishOptionsLike) -> PublishOptions:
    if isinstance(options, PublishOptions):
        return options
    return PublishOptions.from_dict(options or {})


def resolve_consume_options(options: ConsumeOptionsLike) -> ConsumeOptions:
    if isinstance(options, ConsumeOptions):
        return options
    return ConsumeOptions.from_dict(options or {})


@dataclass
class LayerConfig:
    """One broker layer loaded from the environment."""

    connection: ConnectionConfig
    priority: int


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"  # json or text
    output: str = "stdout"  # stdout, file, both
    file_path: str = "./logs/messaging.log"
    max_file_size: int = 10_000_000  # 10MB
    backup_count: int = 5


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Config:
    """
    Main configuration class aggregating all settings.

    A broker section is present only when its host variable is set.
    Sensitive values should be provided via environment variables.
    """

    environment: str = "development"

    redis: Optional[LayerConfig] = None
    redis_use_streams: bool = True

    kafka: Optional[LayerConfig] = None
    kafka_group_id: str = "messaging_consumers"

    rabbitmq: Optional[LayerConfig] = None
    rabbitmq_queue: str = "messaging"
    rabbitmq_exchange: str = "amq.topic"

    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """
        Create configuration from environment variables.

        Environment variables follow the pattern:
        MESSAGING_{BROKER}_{SETTING} (e.g., MESSAGING_KAFKA_HOST)

        Returns:
            Config: Populated configuration instance
        """

        def layer(name: str, default_port: int, default_priority: int) -> Optional[LayerConfig]:
            prefix = f"MESSAGING_{name}"
            if not os.getenv(f"{prefix}_HOST"):
                return None
            return LayerConfig(
                connection=ConnectionConfig.from_env(prefix, default_port=default_port),
                priority=int(os.getenv(f"{prefix}_PRIORITY", str(default_priority))),
            )

        logging_config = LoggingConfig(
            level=os.getenv("MESSAGING_LOG_LEVEL", "INFO"),
            format=os.getenv("MESSAGING_LOG_FORMAT", "json"),
            output=os.getenv("MESSAGING_LOG_OUTPUT", "stdout"),
            file_path=os.getenv("MESSAGING_LOG_FILE", "./logs/messaging.log"),
        )

        return cls(
            environment=os.getenv("MESSAGING_ENVIRONMENT", "development"),
            redis=layer("REDIS", 6379, 0),
            redis_use_streams=_env_flag("MESSAGING_REDIS_USE_STREAMS", "true"),
            kafka=layer("KAFKA", 9092, 1),
            kafka_group_id=os.getenv("MESSAGING_KAFKA_GROUP_ID", "messaging_consumers"),
            rabbitmq=layer("RABBITMQ", 5672, 2),
            rabbitmq_queue=os.getenv("MESSAGING_RABBITMQ_QUEUE", "messaging"),
            rabbitmq_exchange=os.getenv("MESSAGING_RABBITMQ_EXCHANGE", "amq.topic"),
            logging=logging_config,
        )

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of issues.

        Returns:
            List[str]: List of validation error messages
        """
        issues = []

        if not (self.redis or self.kafka or self.rabbitmq):
            issues.append("No broker configured; set at least one MESSAGING_*_HOST")

        if self.environment == "production" and self.rabbitmq:
            if self.rabbitmq.connection.password in (None, "guest"):
                issues.append("Default RabbitMQ password should not be used in production")

        return issues

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to dictionary (excluding sensitive values).

        Returns:
            Dict[str, Any]: Configuration as dictionary
        """

        def describe(layer: Optional[LayerConfig]) -> Optional[Dict[str, Any]]:
            if layer is None:
                return None
            return {
                "host": layer.connection.host,
                "port": layer.connection.port,
                "priority": layer.priority,
            }

        return {
            "environment": self.environment,
            "redis": describe(self.redis),
            "kafka": describe(self.kafka),
            "rabbitmq": describe(self.rabbitmq),
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
                "output": self.logging.output,
            },
        }


# Singleton config instance
_config: Optional[Config] = None


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the global configuration instance.

    Returns:
        Config: Global configuration singleton
    """
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config() -> Config:
    """
    Reload configuration from environment.

    Returns:
        Config: New configuration instance
    """
    global _config
    get_config.cache_clear()
    _config = Config.from_env()
    return _config
