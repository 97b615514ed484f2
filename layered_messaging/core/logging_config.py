"""
Logging Configuration Module
============================
Structured logging for adapters and orchestrators.

This module provides:
- JSON lines output for log aggregation
- Colorized text output for terminals
- Broker/topic context stamped on every adapter record
"""

import logging
import sys
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from pathlib import Path
from logging.handlers import RotatingFileHandler

# Record attributes set by BrokerLogger
CONTEXT_FIELDS = ("broker", "topic")

# Client libraries that log every frame at DEBUG
QUIET_LOGGERS = ("asyncio", "aio_pika", "aiormq", "aiokafka")


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, timezone.utc)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Broker context and the ``extra_data`` mapping passed through
    ``extra=`` are emitted as top-level keys.
    """

    def __init__(self, include_timestamp: bool = True, include_source: bool = True):
        """
        Initialize the JSON formatter.

        Args:
            include_timestamp: Emit the record time as ISO 8601
            include_source: Emit file, line and function of the call site
        """
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_source = include_source

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_timestamp:
            entry["timestamp"] = _record_time(record).isoformat()

        if self.include_source:
            entry["source"] = f"{record.filename}:{record.lineno} in {record.funcName}"

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        data = getattr(record, "extra_data", None)
        if data:
            entry["data"] = data

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """
    Single-line text for development.

    Levels are colorized only when stdout is a terminal.
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def _level(self, levelname: str) -> str:
        label = f"{levelname:8s}"
        if not self.use_colors:
            return label
        return f"{self.LEVEL_COLORS.get(levelname, '')}{label}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        context = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        ]

        parts = [
            _record_time(record).strftime("%Y-%m-%d %H:%M:%S"),
            self._level(record.levelname),
            record.name + (f" [{', '.join(context)}]" if context else ""),
            record.getMessage(),
        ]

        data = getattr(record, "extra_data", None)
        if data:
            parts.append(str(data))

        line = " | ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class BrokerLogger(logging.LoggerAdapter):
    """
    Logger adapter stamping the broker kind and topic on each record.

    Records keep any ``extra`` the caller passes; broker and topic are
    added alongside.
    """

    def __init__(
        self,
        logger: logging.Logger,
        broker: str,
        topic: Optional[str] = None,
    ):
        """
        Initialize the broker logger.

        Args:
            logger: Base logger instance
            broker: Broker kind (redis, kafka, rabbitmq)
            topic: Topic, channel or queue being served
        """
        super().__init__(logger, {"broker": broker, "topic": topic})

    @property
    def broker(self) -> str:
        return self.extra["broker"]

    @property
    def topic(self) -> Optional[str]:
        return self.extra["topic"]

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs

    def for_topic(self, topic: str) -> "BrokerLogger":
        """Return a logger for the same broker bound to another topic."""
        return BrokerLogger(self.logger, self.broker, topic)


def _build_handlers(
    output: str,
    file_path: Optional[str],
    max_file_size: int,
    backup_count: int,
) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []

    if output in ("stdout", "both"):
        handlers.append(logging.StreamHandler(sys.stdout))

    if output in ("file", "both") and file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(file_path, maxBytes=max_file_size, backupCount=backup_count)
        )

    return handlers


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    output: str = "stdout",
    file_path: Optional[str] = None,
    max_file_size: int = 10_000_000,
    backup_count: int = 5,
) -> None:
    """
    Configure the root logger.

    Replaces any handlers already installed on the root logger.

    Args:
        level: Log level name
        log_format: json or text
        output: stdout, file or both
        file_path: Log file, used when output includes file
        max_file_size: Rotation size in bytes
        backup_count: Rotated files to keep
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    formatter = JSONFormatter() if log_format == "json" else TextFormatter()
    for handler in _build_handlers(output, file_path, max_file_size, backup_count):
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance by name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        logging.Logger: Logger instance
    """
    return logging.getLogger(name)


def get_broker_logger(
    broker: str,
    topic: Optional[str] = None,
    name: Optional[str] = None,
) -> BrokerLogger:
    """
    Get a logger bound to a broker and optionally a topic.

    Args:
        broker: Broker kind
        topic: Topic, channel or queue
        name: Logger name (defaults to layered_messaging.<broker>)

    Returns:
        BrokerLogger: Logger with broker context
    """
    return BrokerLogger(logging.getLogger(name or f"layered_messaging.{broker}"), broker, topic)
