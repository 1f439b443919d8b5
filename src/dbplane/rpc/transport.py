"""Contracts consumed from the transport layer.

dbplane does not open connections or frame messages.  A transport
implementation (a gRPC stub wrapper in production, in-memory fakes in
tests) provides the protocols below; everything above this module is
written against them.

::

    Transport
      ├── unary_call(method, request, context)      → Future
      ├── operation_callable(method)                → OperationCallable
      │     ├── future_call(request, context)       → OperationFuture (start fresh)
      │     └── resume_future_call(name)            → OperationFuture (resume)
      ├── server_streaming_call(method, request, observer, context)
      └── close() / await_termination(timeout)
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from dbplane.core.errors import RpcCancelledError, RpcError, translate_error
from dbplane.core.logging import get_logger

if TYPE_CHECKING:
    from dbplane.rpc.lifecycle import ManagedExecutorProvider, StreamWatchdog
    from dbplane.rpc.models import InvocationContext, Operation

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

logger = get_logger(__name__)


class Method(str, Enum):
    """Remote methods addressed through the transport."""

    # Administrative (rate limited)
    CREATE_DATABASE = "CreateDatabase"
    UPDATE_DATABASE_DDL = "UpdateDatabaseDdl"
    DROP_DATABASE = "DropDatabase"
    GET_DATABASE = "GetDatabase"
    CREATE_BACKUP = "CreateBackup"
    RESTORE_DATABASE = "RestoreDatabase"
    LIST_DATABASE_OPERATIONS = "ListDatabaseOperations"
    LIST_BACKUP_OPERATIONS = "ListBackupOperations"
    GET_OPERATION = "GetOperation"
    CANCEL_OPERATION = "CancelOperation"
    LIST_DATABASES = "ListDatabases"
    GET_DATABASE_DDL = "GetDatabaseDdl"
    LIST_BACKUPS = "ListBackups"
    GET_BACKUP = "GetBackup"
    UPDATE_BACKUP = "UpdateBackup"
    DELETE_BACKUP = "DeleteBackup"
    CREATE_INSTANCE = "CreateInstance"
    UPDATE_INSTANCE = "UpdateInstance"
    DELETE_INSTANCE = "DeleteInstance"
    GET_INSTANCE = "GetInstance"
    LIST_INSTANCES = "ListInstances"
    GET_INSTANCE_CONFIG = "GetInstanceConfig"
    LIST_INSTANCE_CONFIGS = "ListInstanceConfigs"

    # Data plane
    CREATE_SESSION = "CreateSession"
    DELETE_SESSION = "DeleteSession"
    EXECUTE_STREAMING_SQL = "ExecuteStreamingSql"
    STREAMING_READ = "StreamingRead"
    BEGIN_TRANSACTION = "BeginTransaction"
    COMMIT = "Commit"
    ROLLBACK = "Rollback"


class OperationFuture(Protocol):
    """Handle to a long-running operation started or resumed by the transport."""

    @property
    def initial_future(self) -> Future[Operation]:
        """Resolves once the starting call has reached the server."""
        ...

    def get_name(self) -> str: ...

    def result(self, timeout: float | None = None) -> Any: ...

    def peek_metadata(self) -> Any: ...

    def cancel(self) -> bool: ...

    def done(self) -> bool: ...


class OperationCallable(Protocol):
    def future_call(self, request: Any, context: InvocationContext) -> OperationFuture: ...

    def resume_future_call(self, operation_name: str) -> OperationFuture: ...


class StreamController(Protocol):
    def disable_auto_inbound_flow_control(self) -> None: ...

    def request(self, count: int) -> None: ...

    def cancel(self) -> None: ...


class ResponseObserver(Protocol):
    def on_start(self, controller: StreamController) -> None: ...

    def on_response(self, message: Any) -> None: ...

    def on_error(self, error: BaseException) -> None: ...

    def on_complete(self) -> None: ...


class Transport(Protocol):
    def unary_call(self, method: Method, request: Any, context: InvocationContext) -> Future[Any]: ...

    def operation_callable(self, method: Method) -> OperationCallable: ...

    def server_streaming_call(
        self,
        method: Method,
        request: Any,
        observer: ResponseObserver,
        context: InvocationContext,
    ) -> None: ...

    def close(self) -> None: ...

    def await_termination(self, timeout: float) -> bool: ...


TransportFactory = Callable[["ManagedExecutorProvider", "StreamWatchdog"], Transport]


class _Cancellable(Protocol[T_co]):
    def result(self, timeout: float | None = None) -> T_co: ...

    def cancel(self) -> bool: ...


def get_result(future: _Cancellable[T], timeout: float | None = None) -> T:
    """Wait for ``future`` and return its value.

    The caller is assumed to be the future's sole consumer: an interrupt
    while waiting cancels the future (and with it the in-flight call) and
    is reported as :class:`RpcCancelledError`.  Any other failure is raised
    as a translated :class:`RpcError`.
    """
    try:
        return future.result(timeout)
    except KeyboardInterrupt as e:
        future.cancel()
        logger.info("rpc_wait_interrupted")
        raise RpcCancelledError("Interrupted while waiting for result", cause=e) from e
    except RpcError:
        raise
    except Exception as e:
        raise translate_error(e) from e


__all__ = [
    "Method",
    "OperationFuture",
    "OperationCallable",
    "StreamController",
    "ResponseObserver",
    "Transport",
    "TransportFactory",
    "get_result",
]
