"""
Structured error types for dbplane.

Every failure that crosses the RPC boundary is classified before it reaches
application code. The classification decides three things: whether the
retry driver may attempt again, whether the failure was a local
cancellation rather than a server verdict, and what gets logged.

Manifesto:
    - **Typed Error Hierarchy:** transport, cancellation, decode and
      configuration failures are distinct types
    - **Explicit Retry Semantics:** ``RpcError.retryable`` derives from the
      status code, never from message text
    - **Rich Context:** errors carry the resource and operation they concern
    - **Error Chaining:** the original transport exception is kept as cause

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        DbPlaneError                           │
        │        (category, retryable, context, cause)                  │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  RpcError (status_code)   DecodeError       ConfigError       │
        │      │                    (PARSE)           (CONFIG)          │
        │  RpcCancelledError                                            │
        │  (CANCELLED)              ClientClosedError                   │
        │                           (LIFECYCLE)                         │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> error = RpcError("backend unavailable", status_code=StatusCode.UNAVAILABLE)
    >>> error.retryable
    True
    >>> translate_error(ConnectionError("reset")).status_code
    <StatusCode.UNAVAILABLE: 'UNAVAILABLE'>

Tags:
    error-handling, exception-hierarchy, status-codes, dbplane

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    NETWORK = "NETWORK"  # deadline, unavailable, connection resets
    SERVER = "SERVER"  # any other status returned by the service
    CANCELLED = "CANCELLED"  # local interrupt, never retried
    PARSE = "PARSE"  # typed payload could not be decoded
    CONFIG = "CONFIG"
    LIFECYCLE = "LIFECYCLE"  # client already shut down
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


class StatusCode(str, Enum):
    """Canonical RPC status codes reported by the transport."""

    OK = "OK"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    ABORTED = "ABORTED"
    OUT_OF_RANGE = "OUT_OF_RANGE"
    UNIMPLEMENTED = "UNIMPLEMENTED"
    INTERNAL = "INTERNAL"
    UNAVAILABLE = "UNAVAILABLE"
    DATA_LOSS = "DATA_LOSS"
    UNAUTHENTICATED = "UNAUTHENTICATED"


TRANSIENT_STATUS_CODES: frozenset[StatusCode] = frozenset(
    {StatusCode.DEADLINE_EXCEEDED, StatusCode.UNAVAILABLE}
)


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        resource: Resource name the call addressed (database, backup, ...)
        method: Transport method name
        operation_name: Long-running operation name, when known
        attempt: Retry attempt number that produced the error
        metadata: Additional key-value pairs
    """

    resource: str | None = None
    method: str | None = None
    operation_name: str | None = None
    attempt: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["resource", "method", "operation_name", "attempt"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DbPlaneError(Exception):
    """
    Base exception for all dbplane errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override both per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DbPlaneError:
        """Add context to this error (fluent API).

        Usage:
            raise RpcError("denied", status_code=StatusCode.PERMISSION_DENIED).with_context(
                resource="projects/p/instances/i/databases/d",
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSPORT ERRORS
# =============================================================================


class RpcError(DbPlaneError):
    """A classified failure reported by (or on behalf of) the remote service.

    ``retryable`` is true only for DEADLINE_EXCEEDED and UNAVAILABLE; every
    other code is terminal and must reach the caller unchanged.
    """

    default_category = ErrorCategory.SERVER

    def __init__(
        self,
        message: str,
        *,
        status_code: StatusCode = StatusCode.UNKNOWN,
        **kwargs: Any,
    ):
        self.status_code = status_code
        if status_code in TRANSIENT_STATUS_CODES:
            kwargs.setdefault("category", ErrorCategory.NETWORK)
            kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["status_code"] = self.status_code.value
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, status_code={self.status_code.value})"


class RpcCancelledError(RpcError):
    """The local side stopped waiting (interrupt or cancelled future)."""

    default_category = ErrorCategory.CANCELLED

    def __init__(self, message: str = "Call was cancelled", **kwargs: Any):
        kwargs.pop("status_code", None)
        super().__init__(message, status_code=StatusCode.CANCELLED, **kwargs)


class ClientClosedError(DbPlaneError):
    """Raised when a call is issued after ``shutdown()`` has begun."""

    default_category = ErrorCategory.LIFECYCLE

    def __init__(self, message: str = "RPC client has been shut down", **kwargs: Any):
        super().__init__(message, **kwargs)


class DecodeError(DbPlaneError):
    """A packed payload could not be unpacked into the requested type."""

    default_category = ErrorCategory.PARSE


class ConfigError(DbPlaneError):
    """Invalid configuration or wiring."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def _status_from_code_attr(error: BaseException) -> StatusCode | None:
    code = getattr(error, "code", None)
    if callable(code):
        try:
            code = code()
        except Exception:
            return None
    name = getattr(code, "name", code)
    if isinstance(name, str) and name.upper() in StatusCode.__members__:
        return StatusCode[name.upper()]
    return None


def translate_error(error: BaseException) -> RpcError:
    """Map an arbitrary transport exception to an :class:`RpcError`.

    ``RpcError`` instances pass through unchanged so the original
    classification is never altered.
    """
    if isinstance(error, RpcError):
        return error
    if isinstance(error, concurrent.futures.CancelledError):
        return RpcCancelledError("Future was cancelled", cause=error)

    status = _status_from_code_attr(error)
    if status is StatusCode.CANCELLED:
        return RpcCancelledError(str(error) or "Call was cancelled", cause=error)
    if status is not None:
        return RpcError(str(error) or status.value, status_code=status, cause=error)

    if isinstance(error, TimeoutError):
        return RpcError(str(error) or "Deadline exceeded", status_code=StatusCode.DEADLINE_EXCEEDED, cause=error)
    if isinstance(error, ConnectionError):
        return RpcError(str(error) or "Service unavailable", status_code=StatusCode.UNAVAILABLE, cause=error)
    return RpcError(str(error) or type(error).__name__, status_code=StatusCode.UNKNOWN, cause=error)


def is_retryable(error: BaseException) -> bool:
    """Check if an error is a transient transport condition."""
    if isinstance(error, DbPlaneError):
        return error.retryable
    return translate_error(error).retryable


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, DbPlaneError):
        return error.category
    return translate_error(error).category


__all__ = [
    "ErrorCategory",
    "StatusCode",
    "TRANSIENT_STATUS_CODES",
    "ErrorContext",
    "DbPlaneError",
    "RpcError",
    "RpcCancelledError",
    "ClientClosedError",
    "DecodeError",
    "ConfigError",
    "translate_error",
    "is_retryable",
    "categorize_error",
]
