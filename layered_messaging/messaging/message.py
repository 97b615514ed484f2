"""
Message Serialization Module
============================
Conversion between logical messages and the text payloads brokers carry.

This module provides:
- Recursive validation of structured payloads
- JSON serialization of structured and encodable messages
- Lossy-safe deserialization of consumed payloads
"""

import io
import json
import mmap
import selectors
import socket
from dataclasses import asdict, is_dataclass
from datetime import date, time
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from ..core.logging_config import get_logger
from ..core.exceptions import ValidationError

logger = get_logger(__name__)

# Text passes through untouched; dicts and lists are validated before
# encoding; any other object is handed straight to the encoder.
Structured = Union[Dict[str, Any], List[Any]]
LogicalMessage = Union[str, bytes, Structured, Any]

_RESOURCE_TYPES = (io.IOBase, socket.socket, mmap.mmap, selectors.BaseSelector)
_SCALAR_TYPES = (str, int, float, bool, type(None))


def _has_json_support(value: Any) -> bool:
    return (
        callable(getattr(value, "to_dict", None))
        or callable(getattr(value, "__json__", None))
        or (is_dataclass(value) and not isinstance(value, type))
        or isinstance(value, Enum)
    )


def _has_text_conversion(value: Any) -> bool:
    return type(value).__str__ is not object.__str__


def _json_default(value: Any) -> Any:
    """Encoder hook for values the json module cannot encode natively."""
    if callable(getattr(value, "__json__", None)):
        return value.__json__()
    if callable(getattr(value, "to_dict", None)):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, (set, frozenset)) or not _has_text_conversion(value):
        raise TypeError(
            f"Object of type {type(value).__name__} is not JSON serializable"
        )
    return str(value)


class MessageValidator:
    """
    Checks that a structured payload can be JSON encoded.

    Rejects OS resource handles, callables, and objects that offer
    neither text conversion nor explicit JSON support. Date and time
    values are always accepted.
    """

    def validate(self, data: Structured) -> None:
        """
        Walk a structured payload and reject values that cannot be encoded.

        Args:
            data: Dict or list to validate

        Raises:
            ValidationError: Naming the first offending key
        """
        self._walk(data, path=(), seen=set())

    def _walk(self, node: Any, path: tuple, seen: set) -> None:
        if isinstance(node, Mapping):
            items = node.items()
        elif isinstance(node, (list, tuple)):
            items = enumerate(node)
        else:
            self._check_value(node, path)
            return

        if id(node) in seen:
            raise self._error("Circular reference", node, path)
        seen.add(id(node))

        for key, value in items:
            self._walk(value, path + (str(key),), seen)

        seen.discard(id(node))

    def _check_value(self, value: Any, path: tuple) -> None:
        if isinstance(value, _SCALAR_TYPES) or isinstance(value, (date, time)):
            return

        if isinstance(value, _RESOURCE_TYPES):
            raise self._error("Cannot serialize resource", value, path)

        if callable(value):
            raise self._error("Cannot serialize callable", value, path)

        if _has_json_support(value) or _has_text_conversion(value):
            return

        key = path[-1] if path else ""
        type_name = type(value).__name__
        raise ValidationError(
            f"Object of type '{type_name}' at key '{key}' is not JSON serializable. "
            "Provide to_dict() or __json__(), or convert it to a dict first.",
            field=".".join(path) or None,
            value_type=type_name,
        )

    @staticmethod
    def _error(reason: str, value: Any, path: tuple) -> ValidationError:
        key = path[-1] if path else ""
        return ValidationError(
            f"{reason} at key '{key}'",
            field=".".join(path) or None,
            value_type=type(value).__name__,
        )


_default_validator = MessageValidator()


def validate(data: Structured) -> None:
    """Validate a structured payload with the default validator."""
    _default_validator.validate(data)


def encode(value: Any) -> str:
    """
    JSON-encode a value.

    Raises:
        ValidationError: If the encoder rejects the value
    """
    try:
        return json.dumps(value, default=_json_default, allow_nan=False)
    except (TypeError, ValueError, UnicodeDecodeError) as e:
        raise ValidationError(
            f"Message is not JSON serializable: {e}",
            value_type=type(value).__name__,
            cause=e,
        ) from e


def serialize(
    message: LogicalMessage,
    validator: Optional[MessageValidator] = None,
) -> str:
    """
    Convert a logical message into wire text.

    Text is returned unchanged, structured values are validated and then
    encoded, other objects are encoded directly.

    Args:
        message: Text, dict/list, or encodable object
        validator: Validator for structured values

    Returns:
        str: Wire payload
    """
    if isinstance(message, str):
        return message

    if isinstance(message, bytes):
        try:
            return message.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(
                "Binary message is not valid UTF-8 text", value_type="bytes", cause=e
            ) from e

    if isinstance(message, (dict, list, tuple)):
        (validator or _default_validator).validate(message)

    return encode(message)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant: {name}")


def deserialize(raw: str) -> Union[str, Structured]:
    """
    Decode a consumed payload when it holds a JSON object or array.

    Scalars and JSON strings are returned as the raw text, as is
    anything that fails to decode.

    Args:
        raw: Raw payload

    Returns:
        Decoded dict/list, or the raw text
    """
    if raw == "":
        return raw

    try:
        decoded = json.loads(raw, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        # Nesting deeper than the interpreter's recursion limit
        return raw

    if isinstance(decoded, (dict, list)):
        return decoded

    logger.debug("Payload decoded to a JSON scalar, keeping raw text")
    return raw
