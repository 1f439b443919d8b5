"""
Structured logging for dbplane.

All modules log through structlog so retry, resumption and shutdown events
can be correlated by resource and operation name.  dbplane is a library:
nothing is configured on import.  Applications call
:func:`configure_logging` (or :func:`configure_from_settings`) once.

Usage Flow:
    ::

        configure_logging(level="DEBUG", json_format=True)
        logger = get_logger(__name__)
        logger.info("operation_resumed", operation_name="projects/p/.../operations/o1")

        Output (JSON format):
        {
          "@timestamp": "2026-10-19T10:00:00Z",
          "log.level": "info",
          "service.name": "dbplane",
          "event": "operation_resumed",
          "operation_name": "projects/p/.../operations/o1"
        }

    Errors passed as ``error=`` are expanded through ``to_dict()`` when
    they are :class:`~dbplane.core.errors.DbPlaneError` instances, so the
    status code and resource travel with the event.

Tags:
    logging, structlog, observability, dbplane

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from dbplane.core.errors import DbPlaneError

if TYPE_CHECKING:
    from dbplane.core.settings import RpcSettings

DEFAULT_SERVICE = "dbplane"

# ECS field names for the keys structlog emits.
_ECS_RENAMES = {"timestamp": "@timestamp", "level": "log.level", "logger": "log.logger"}


def _service_metadata(service: str) -> Processor:
    def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", service)
        return event_dict

    return add_service


def _expand_errors(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    error = event_dict.get("error")
    if isinstance(error, DbPlaneError):
        event_dict["error"] = error.to_dict()
    return event_dict


def _ecs_field_names(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for source, target in _ECS_RENAMES.items():
        if source in event_dict:
            event_dict[target] = event_dict.pop(source)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = DEFAULT_SERVICE,
    add_timestamp: bool = True,
) -> None:
    """Configure structlog (and the stdlib root logger) for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for JSON unless stdout is a tty
        service: Value of ``service.name`` on every event
        add_timestamp: Include an ISO timestamp
    """
    numeric_level = getattr(logging, level.upper())
    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _service_metadata(service),
        _expand_errors,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            _ecs_field_names,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # Module-level loggers are created at import, before configuration.
        cache_logger_on_first_use=False,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def configure_from_settings(settings: RpcSettings) -> None:
    """Apply ``log_level`` / ``log_format`` from :class:`RpcSettings`."""
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind fields onto every event logged from the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


class LogContext:
    """Scoped :func:`bind_context`; restores earlier values on exit.

    Example:
        with LogContext(resource="projects/p/instances/i"):
            rpc.create_backup(...)
    """

    def __init__(self, **fields: Any):
        self._fields = fields
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


__all__ = [
    "DEFAULT_SERVICE",
    "configure_logging",
    "configure_from_settings",
    "get_logger",
    "bind_context",
    "unbind_context",
    "LogContext",
]
