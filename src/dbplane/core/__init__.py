"""dbplane core -- errors, structured logging and settings.

Architecture::

    errors.py      Error taxonomy, StatusCode, translate_error()
    logging.py     structlog configuration + get_logger()
    settings.py    RpcSettings (pydantic-settings, DBPLANE_ prefix)
"""

from .errors import (
    ClientClosedError,
    ConfigError,
    DbPlaneError,
    DecodeError,
    ErrorCategory,
    ErrorContext,
    RpcCancelledError,
    RpcError,
    StatusCode,
    translate_error,
)
from .logging import configure_from_settings, configure_logging, get_logger
from .settings import RpcSettings

__all__ = [
    "ClientClosedError",
    "ConfigError",
    "DbPlaneError",
    "DecodeError",
    "ErrorCategory",
    "ErrorContext",
    "RpcCancelledError",
    "RpcError",
    "StatusCode",
    "translate_error",
    "configure_logging",
    "configure_from_settings",
    "get_logger",
    "RpcSettings",
]
