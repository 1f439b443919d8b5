"""Data model shared by the RPC layer.

Wire payloads (operations, typed metadata, requests) are pydantic models so
malformed payloads fail validation instead of producing half-filled
objects.  Client-side call parameters (``CallOptions``,
``InvocationContext``) are frozen dataclasses: they are built locally,
consumed once and never mutated.

Typed blobs travel as :class:`PackedMessage` (a type URL plus a field
mapping) and are unpacked on demand, the same way the service packs
operation metadata and responses.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dbplane.core.errors import DecodeError, StatusCode

TYPE_URL_PREFIX = "type.googleapis.com/"

M = TypeVar("M", bound="WireMessage")
T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class WireMessage(BaseModel):
    """Base for typed payloads that can be packed into an operation."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    TYPE_PACKAGE: ClassVar[str] = "admin.database.v1"

    @classmethod
    def full_name(cls) -> str:
        return f"{cls.TYPE_PACKAGE}.{cls.__name__}"

    @classmethod
    def type_url(cls) -> str:
        return f"{TYPE_URL_PREFIX}{cls.full_name()}"


class PackedMessage(BaseModel):
    """A typed payload whose concrete type is named by ``type_url``."""

    model_config = ConfigDict(frozen=True)

    type_url: str
    value: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def pack(cls, message: WireMessage) -> PackedMessage:
        return cls(type_url=message.type_url(), value=message.model_dump())

    def is_type(self, model_cls: type[WireMessage]) -> bool:
        return self.type_url == model_cls.type_url()

    def unpack(self, model_cls: type[M]) -> M:
        """Decode into ``model_cls``.

        Raises:
            DecodeError: the type URL names another type or the fields do
                not validate
        """
        if not self.is_type(model_cls):
            raise DecodeError(
                f"Cannot unpack {self.type_url} as {model_cls.full_name()}"
            )
        try:
            return model_cls.model_validate(self.value)
        except ValidationError as e:
            raise DecodeError(
                f"Malformed {model_cls.full_name()} payload", cause=e
            ) from e


def present_timestamp(value: datetime | None) -> datetime | None:
    """``None`` for absent or default (epoch) timestamps."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    if value == _EPOCH:
        return None
    return value


# =============================================================================
# OPERATIONS
# =============================================================================


class Operation(BaseModel):
    """Read-only snapshot of a server-side long-running operation."""

    model_config = ConfigDict(frozen=True)

    name: str
    done: bool = False
    metadata: PackedMessage | None = None
    response: PackedMessage | None = None
    error_code: StatusCode | None = None
    error_message: str | None = None
    start_time: datetime | None = None

    @property
    def failed(self) -> bool:
        return self.done and self.error_code is not None


class OperationPage(BaseModel):
    """One page of a listing; an empty or absent token marks the last page."""

    model_config = ConfigDict(frozen=True)

    operations: tuple[Operation, ...] = ()
    next_page_token: str | None = None

    @property
    def is_last(self) -> bool:
        return not self.next_page_token


class Page(BaseModel, Generic[T]):
    """One page of a resource listing; same last-page rule as operations."""

    model_config = ConfigDict(frozen=True)

    items: tuple[T, ...] = ()
    next_page_token: str | None = None

    @property
    def is_last(self) -> bool:
        return not self.next_page_token


# =============================================================================
# RESOURCES AND METADATA
# =============================================================================


class Instance(WireMessage):
    TYPE_PACKAGE: ClassVar[str] = "admin.instance.v1"

    name: str = ""
    config: str = ""
    display_name: str = ""
    node_count: int = 0
    state: str = ""
    labels: dict[str, str] = Field(default_factory=dict)


class InstanceConfig(WireMessage):
    TYPE_PACKAGE: ClassVar[str] = "admin.instance.v1"

    name: str = ""
    display_name: str = ""


class Session(WireMessage):
    TYPE_PACKAGE: ClassVar[str] = "data.v1"

    name: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    create_time: datetime | None = None


class OperationProgress(WireMessage):
    progress_percent: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None


class Database(WireMessage):
    name: str = ""
    state: str = ""
    create_time: datetime | None = None


class Backup(WireMessage):
    name: str = ""
    database: str = ""
    expire_time: datetime | None = None
    create_time: datetime | None = None
    state: str = ""


class CreateDatabaseMetadata(WireMessage):
    database: str = ""


class CreateBackupMetadata(WireMessage):
    name: str = ""
    database: str = ""
    progress: OperationProgress | None = None


class RestoreDatabaseMetadata(WireMessage):
    name: str = ""
    backup: str = ""
    progress: OperationProgress | None = None


class UpdateDatabaseDdlMetadata(WireMessage):
    database: str = ""
    statements: tuple[str, ...] = ()
    commit_timestamps: tuple[datetime, ...] = ()


# =============================================================================
# REQUESTS
# =============================================================================


class CreateDatabaseRequest(WireMessage):
    parent: str
    create_statement: str
    extra_statements: tuple[str, ...] = ()


class CreateBackupRequest(WireMessage):
    parent: str
    backup_id: str
    backup: Backup


class RestoreDatabaseRequest(WireMessage):
    parent: str
    database_id: str
    backup: str


class UpdateDatabaseDdlRequest(WireMessage):
    database: str
    statements: tuple[str, ...]
    operation_id: str = ""


class ListOperationsRequest(WireMessage):
    parent: str
    filter: str | None = None
    page_size: int = 0
    page_token: str | None = None


class ListRequest(WireMessage):
    """Paged listing of the children of ``parent``."""

    parent: str
    filter: str | None = None
    page_size: int = 0
    page_token: str | None = None


class CreateInstanceRequest(WireMessage):
    TYPE_PACKAGE: ClassVar[str] = "admin.instance.v1"

    parent: str
    instance_id: str
    instance: Instance


class UpdateInstanceRequest(WireMessage):
    TYPE_PACKAGE: ClassVar[str] = "admin.instance.v1"

    instance: Instance
    field_mask: tuple[str, ...]


class UpdateBackupRequest(WireMessage):
    backup: Backup
    update_mask: tuple[str, ...]


class CreateSessionRequest(WireMessage):
    TYPE_PACKAGE: ClassVar[str] = "data.v1"

    database: str
    labels: dict[str, str] = Field(default_factory=dict)


class ReadRequest(WireMessage):
    """Key-based read of ``columns`` from ``table``, streamed like a query."""

    TYPE_PACKAGE: ClassVar[str] = "data.v1"

    session: str
    table: str
    columns: tuple[str, ...]
    keys: tuple[Any, ...] = ()
    index: str = ""
    limit: int = 0


class NameRequest(WireMessage):
    """Request addressing a single resource or operation by name."""

    name: str


class SessionRequest(WireMessage):
    """Data-plane request scoped to a session; the payload is opaque here."""

    session: str
    payload: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# CALL PARAMETERS
# =============================================================================


@dataclass(frozen=True)
class CallOptions:
    """Caller-supplied tuning for one invocation.

    Attributes:
        channel_hint: Pins the call to one pooled connection
        timeout: Per-attempt deadline in seconds
        values: Extension options, read with :meth:`get`
    """

    channel_hint: int | None = None
    timeout: float | None = None
    values: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


@dataclass(frozen=True)
class InvocationContext:
    """Everything the transport needs for exactly one attempt.

    ``deadline`` is an absolute monotonic instant; contexts are rebuilt for
    every attempt so it is always relative to the attempt's own start.
    """

    resource: str | None
    extra_headers: Mapping[str, str]
    stream_wait_timeout: float
    stream_idle_timeout: float
    channel_affinity: int | None = None
    call_credentials: Any = None
    deadline: float | None = None

    def remaining(self, now: float) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - now)


__all__ = [
    "TYPE_URL_PREFIX",
    "WireMessage",
    "PackedMessage",
    "present_timestamp",
    "Operation",
    "OperationPage",
    "Page",
    "OperationProgress",
    "Database",
    "Backup",
    "Instance",
    "InstanceConfig",
    "Session",
    "CreateDatabaseMetadata",
    "CreateBackupMetadata",
    "RestoreDatabaseMetadata",
    "UpdateDatabaseDdlMetadata",
    "CreateDatabaseRequest",
    "CreateBackupRequest",
    "RestoreDatabaseRequest",
    "UpdateDatabaseDdlRequest",
    "ListOperationsRequest",
    "ListRequest",
    "CreateInstanceRequest",
    "UpdateInstanceRequest",
    "UpdateBackupRequest",
    "CreateSessionRequest",
    "ReadRequest",
    "NameRequest",
    "SessionRequest",
    "CallOptions",
    "InvocationContext",
]
