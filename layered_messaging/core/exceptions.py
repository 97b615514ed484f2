"""
Custom Exceptions Module
========================
Centralized exception definitions for the layered messaging package.

This module defines a hierarchy of exceptions for:
- Broker connection failures
- Publish and consume failures (including all-layers-exhausted aggregates)
- Configuration errors
- Payload validation errors
"""

from typing import Optional, Dict, Any, List, Tuple


class MessagingException(Exception):
    """
    Base exception for all messaging errors.

    Provides structured error information including:
    - Error code for programmatic handling
    - Additional context data
    - Cause tracking for exception chaining
    """

    def __init__(
        self,
        message: str,
        code: str = "MESSAGING_ERROR",
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error message
            code: Machine-readable error code
            details: Additional context data
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for logging.

        Returns:
            Dict[str, Any]: Exception data as dictionary
        """
        result = {
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class BrokerConnectionError(MessagingException):
    """Exception raised when a broker cannot be reached or authenticated."""

    def __init__(
        self,
        message: str,
        broker: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize connection exception.

        Args:
            message: Human-readable error message
            broker: Broker kind involved (redis, kafka, rabbitmq)
            details: Additional context data
            cause: Original exception that caused this error
        """
        details = details or {}
        if broker:
            details["broker"] = broker
        super().__init__(message, "CONNECTION_ERROR", details, cause)
        self.broker = broker


class _LayeredFailure(MessagingException):
    """Shared shape of publish/consume errors that may aggregate layers."""

    def __init__(
        self,
        message: str,
        code: str,
        topic: Optional[str] = None,
        errors: Optional[List[Tuple[str, str]]] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        details = details or {}
        if topic:
            details["topic"] = topic
        if errors:
            details["layer_errors"] = [
                {"kind": kind, "error": error} for kind, error in errors
            ]
        super().__init__(message, code, details, cause)
        self.topic = topic
        self.errors = list(errors or [])


class PublishError(_LayeredFailure):
    """Exception raised when a message cannot be published."""

    def __init__(
        self,
        message: str,
        topic: Optional[str] = None,
        errors: Optional[List[Tuple[str, str]]] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, "PUBLISH_ERROR", topic, errors, details, cause)


class ConsumeError(_LayeredFailure):
    """Exception raised when consumption fails unrecoverably."""

    def __init__(
        self,
        message: str,
        topic: Optional[str] = None,
        errors: Optional[List[Tuple[str, str]]] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, "CONSUME_ERROR", topic, errors, details, cause)


class ConfigError(MessagingException, ValueError):
    """Exception raised for invalid configuration or missing layers."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, "CONFIG_ERROR", details, cause)
        self.field = field


class ValidationError(MessagingException):
    """Exception raised when a payload cannot be encoded."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """
        Initialize validation exception.

        Args:
            message: Human-readable error message
            field: Dotted path of the offending key
            value_type: Type name of the offending value
            details: Additional context data
            cause: Original exception that caused this error
        """
        details = details or {}
        if field:
            details["field"] = field
        if value_type:
            details["value_type"] = value_type
        super().__init__(message, "VALIDATION_ERROR", details, cause)
        self.field = field
        self.value_type = value_type

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result
