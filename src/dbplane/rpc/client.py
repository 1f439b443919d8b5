"""DatabaseRpc: the client-facing RPC surface.

Wires the four resilience components to a transport:

::

    DatabaseRpc
      ├── AdministrativeRateLimiter      ─ every admin call, keyed by project
      ├── CallContextBuilder             ─ fresh context per attempt
      ├── OperationResumptionCoordinator ─ create database / backup, restore
      └── ResourceLifecycleManager       ─ pools, watchdog, shutdown

Administrative methods (instance, database and backup lifecycle, operation
listing and polling) are throttled; data-plane methods (sessions, reads,
queries, transactions) are not.

Example:
    >>> settings = RpcSettings(project_id="my-project", auto_throttle_administrative_requests=True)
    >>> with DatabaseRpc(settings, grpc_transport_factory) as rpc:
    ...     handle = rpc.create_database(
    ...         "projects/my-project/instances/main",
    ...         "CREATE DATABASE `orders`",
    ...     )
    ...     database = handle.result()
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from dbplane.core.errors import DbPlaneError, RpcError, StatusCode, translate_error
from dbplane.core.logging import get_logger
from dbplane.core.settings import RpcSettings
from dbplane.execution.rate_limit import AdministrativeRateLimiter, RateLimiterRegistry
from dbplane.execution.retry import SYSTEM_CLOCK, Clock, RetrySettings
from dbplane.rpc.context import CallContextBuilder, CallCredentialsProvider, HeaderProvider
from dbplane.rpc.lifecycle import ManagedExecutorProvider, ResourceLifecycleManager, StreamWatchdog
from dbplane.rpc.models import (
    Backup,
    CallOptions,
    CreateBackupMetadata,
    CreateBackupRequest,
    CreateDatabaseMetadata,
    CreateDatabaseRequest,
    CreateInstanceRequest,
    CreateSessionRequest,
    Database,
    Instance,
    InstanceConfig,
    InvocationContext,
    ListOperationsRequest,
    ListRequest,
    NameRequest,
    Operation,
    OperationPage,
    Page,
    ReadRequest,
    RestoreDatabaseMetadata,
    RestoreDatabaseRequest,
    Session,
    SessionRequest,
    UpdateBackupRequest,
    UpdateDatabaseDdlRequest,
    UpdateInstanceRequest,
)
from dbplane.rpc.operations import (
    DEFAULT_OPERATION_RETRY_SETTINGS,
    OperationHandle,
    OperationResumptionCoordinator,
    backup_start_time,
    database_create_time,
    operation_filter,
    restore_start_time,
)
from dbplane.rpc.streaming import ResultStreamConsumer, ResultStreamObserver, StreamingCall
from dbplane.rpc.transport import Method, TransportFactory, get_result

logger = get_logger(__name__)

_CREATE_DATABASE = re.compile(r"^\s*CREATE\s+DATABASE\s+`?([^`\s]+)`?\s*$", re.IGNORECASE)


def database_id_from_statement(create_statement: str) -> str:
    match = _CREATE_DATABASE.match(create_statement)
    if match is None:
        raise RpcError(
            f"Not a CREATE DATABASE statement: {create_statement!r}",
            status_code=StatusCode.INVALID_ARGUMENT,
        )
    return match.group(1)


class DatabaseRpc:
    """Administrative and data-plane calls against one project."""

    def __init__(
        self,
        settings: RpcSettings,
        transport_factory: TransportFactory,
        *,
        rate_limiter_registry: RateLimiterRegistry | None = None,
        credentials_provider: CallCredentialsProvider | None = None,
        clock: Clock = SYSTEM_CLOCK,
        sleep: Callable[[float], None] = time.sleep,
        operation_retry_settings: RetrySettings = DEFAULT_OPERATION_RETRY_SETTINGS,
    ):
        self.settings = settings
        self.project_name = settings.project_name
        self.operation_retry_settings = operation_retry_settings

        registry = rate_limiter_registry or RateLimiterRegistry.process_default()
        self.admin_rate_limiter = AdministrativeRateLimiter(
            registry,
            enabled=settings.auto_throttle_administrative_requests,
            rate=settings.administrative_requests_rate_limit,
            clock=clock.monotonic,
            sleep=sleep,
        )
        self.admin_rate_limiter.register(self.project_name)

        self.context_builder = CallContextBuilder(
            settings,
            HeaderProvider(settings),
            credentials_provider,
            clock,
        )
        self.executor_provider = ManagedExecutorProvider(settings.min_thread_count)
        self.watchdog = StreamWatchdog(settings.watchdog_period_seconds, clock=clock)
        self.lifecycle = ResourceLifecycleManager(
            self.executor_provider,
            self.watchdog,
            termination_timeout=settings.termination_timeout_seconds,
        )
        self.transport = transport_factory(self.executor_provider, self.watchdog)
        self.lifecycle.attach_transport(self.transport)

        self.coordinator = OperationResumptionCoordinator(
            self.admin_rate_limiter,
            self.context_builder,
            clock=clock,
            sleep=sleep,
        )
        self._clock = clock

    # ── plumbing ─────────────────────────────────────────────────

    def new_call_context(self, options: CallOptions | None, resource: str | None) -> InvocationContext:
        return self.context_builder.build_context(options, resource)

    def _admin_call(self, method: Method, request: Any, resource: str) -> Any:
        self.lifecycle.check_open()
        self.admin_rate_limiter.acquire(self.project_name)
        context = self.new_call_context(None, resource)
        return get_result(self.transport.unary_call(method, request, context))

    def _admin_operation(self, method: Method, request: Any, resource: str) -> OperationHandle:
        """Start an operation once, without resumption; the permit is still taken."""
        self.lifecycle.check_open()
        self.admin_rate_limiter.acquire(self.project_name)
        context = self.new_call_context(None, resource)
        return OperationHandle(self.transport.operation_callable(method).future_call(request, context))

    def _data_call(self, method: Method, request: Any, resource: str, options: CallOptions | None) -> Any:
        self.lifecycle.check_open()
        context = self.new_call_context(options, resource)
        return get_result(self.transport.unary_call(method, request, context))

    def _stream_call(
        self,
        method: Method,
        request: Any,
        resource: str,
        consumer: ResultStreamConsumer,
        options: CallOptions | None,
    ) -> StreamingCall:
        self.lifecycle.check_open()
        context = self.new_call_context(options, resource)
        observer = ResultStreamObserver(consumer, self._clock)
        self.watchdog.watch(observer, context.stream_wait_timeout, context.stream_idle_timeout)
        try:
            self.transport.server_streaming_call(method, request, observer, context)
        except BaseException as e:
            # The caller gets the error; the consumer never hears of the stream.
            self.watchdog.unwatch(observer)
            observer.abandon()
            if isinstance(e, Exception) and not isinstance(e, DbPlaneError):
                raise translate_error(e).with_context(resource=resource) from e
            raise
        return StreamingCall(observer)

    # ── instance configs and instances ───────────────────────────

    def list_instance_configs(self, page_size: int = 0, page_token: str | None = None) -> Page[InstanceConfig]:
        request = ListRequest(parent=self.project_name, page_size=page_size, page_token=page_token)
        return self._admin_call(Method.LIST_INSTANCE_CONFIGS, request, self.project_name)

    def get_instance_config(self, name: str) -> InstanceConfig:
        return self._admin_call(Method.GET_INSTANCE_CONFIG, NameRequest(name=name), self.project_name)

    def list_instances(
        self,
        page_size: int = 0,
        page_token: str | None = None,
        filter: str | None = None,
    ) -> Page[Instance]:
        request = ListRequest(parent=self.project_name, filter=filter, page_size=page_size, page_token=page_token)
        return self._admin_call(Method.LIST_INSTANCES, request, self.project_name)

    def get_instance(self, name: str) -> Instance:
        return self._admin_call(Method.GET_INSTANCE, NameRequest(name=name), name)

    def delete_instance(self, name: str) -> None:
        self._admin_call(Method.DELETE_INSTANCE, NameRequest(name=name), name)

    def create_instance(self, parent: str, instance_id: str, instance: Instance) -> OperationHandle:
        request = CreateInstanceRequest(parent=parent, instance_id=instance_id, instance=instance)
        return self._admin_operation(Method.CREATE_INSTANCE, request, parent)

    def update_instance(self, instance: Instance, field_mask: Iterable[str]) -> OperationHandle:
        request = UpdateInstanceRequest(instance=instance, field_mask=tuple(field_mask))
        return self._admin_operation(Method.UPDATE_INSTANCE, request, instance.name)

    # ── operations ───────────────────────────────────────────────

    def list_database_operations(
        self,
        instance: str,
        page_size: int = 0,
        filter: str | None = None,
        page_token: str | None = None,
    ) -> OperationPage:
        request = ListOperationsRequest(parent=instance, filter=filter, page_size=page_size, page_token=page_token)
        return self._admin_call(Method.LIST_DATABASE_OPERATIONS, request, instance)

    def list_backup_operations(
        self,
        instance: str,
        page_size: int = 0,
        filter: str | None = None,
        page_token: str | None = None,
    ) -> OperationPage:
        request = ListOperationsRequest(parent=instance, filter=filter, page_size=page_size, page_token=page_token)
        return self._admin_call(Method.LIST_BACKUP_OPERATIONS, request, instance)

    def get_operation(self, name: str) -> Operation:
        return self._admin_call(Method.GET_OPERATION, NameRequest(name=name), name)

    def cancel_operation(self, name: str) -> None:
        self._admin_call(Method.CANCEL_OPERATION, NameRequest(name=name), name)

    # ── databases ────────────────────────────────────────────────

    def list_databases(self, instance: str, page_size: int = 0, page_token: str | None = None) -> Page[Database]:
        request = ListRequest(parent=instance, page_size=page_size, page_token=page_token)
        return self._admin_call(Method.LIST_DATABASES, request, instance)

    def get_database(self, name: str) -> Database:
        return self._admin_call(Method.GET_DATABASE, NameRequest(name=name), name)

    def get_database_ddl(self, name: str) -> list[str]:
        return list(self._admin_call(Method.GET_DATABASE_DDL, NameRequest(name=name), name) or ())

    def drop_database(self, name: str) -> None:
        self._admin_call(Method.DROP_DATABASE, NameRequest(name=name), name)

    def create_database(
        self,
        instance: str,
        create_statement: str,
        extra_statements: Iterable[str] = (),
    ) -> OperationHandle:
        self.lifecycle.check_open()
        database_id = database_id_from_statement(create_statement)
        request = CreateDatabaseRequest(
            parent=instance,
            create_statement=create_statement,
            extra_statements=tuple(extra_statements),
        )
        query = operation_filter(
            CreateDatabaseMetadata,
            f"name:{instance}/databases/{database_id}/operations/",
        )
        return self.coordinator.start_or_resume(
            self.transport.operation_callable(Method.CREATE_DATABASE),
            request,
            self.project_name,
            lambda token: self.list_database_operations(instance, 0, query, token),
            database_create_time,
            self.operation_retry_settings,
            resource=instance,
        )

    def update_database_ddl(
        self,
        database: str,
        statements: Iterable[str],
        operation_id: str | None = None,
    ) -> OperationHandle:
        """Apply schema statements.

        With an ``operation_id``, a start that fails with ALREADY_EXISTS means
        an earlier call already started this exact update; that operation is
        resumed instead of failing.
        """
        self.lifecycle.check_open()
        self.admin_rate_limiter.acquire(self.project_name)
        request = UpdateDatabaseDdlRequest(
            database=database,
            statements=tuple(statements),
            operation_id=operation_id or "",
        )
        callable_ = self.transport.operation_callable(Method.UPDATE_DATABASE_DDL)
        future = callable_.future_call(request, self.new_call_context(None, database))
        try:
            get_result(future.initial_future)
        except RpcError as e:
            if e.status_code is not StatusCode.ALREADY_EXISTS or not operation_id:
                raise e.with_context(resource=database)
            name = f"{database}/operations/{operation_id}"
            logger.info("operation_resumed", operation_name=name, reason="already_exists")
            return OperationHandle(callable_.resume_future_call(name), resumed=True)
        return OperationHandle(future)

    # ── backups ──────────────────────────────────────────────────

    def list_backups(
        self,
        instance: str,
        page_size: int = 0,
        filter: str | None = None,
        page_token: str | None = None,
    ) -> Page[Backup]:
        request = ListRequest(parent=instance, filter=filter, page_size=page_size, page_token=page_token)
        return self._admin_call(Method.LIST_BACKUPS, request, instance)

    def get_backup(self, name: str) -> Backup:
        return self._admin_call(Method.GET_BACKUP, NameRequest(name=name), name)

    def update_backup(self, backup: Backup, update_mask: Iterable[str]) -> Backup:
        request = UpdateBackupRequest(backup=backup, update_mask=tuple(update_mask))
        return self._admin_call(Method.UPDATE_BACKUP, request, backup.name)

    def delete_backup(self, name: str) -> None:
        self._admin_call(Method.DELETE_BACKUP, NameRequest(name=name), name)

    def create_backup(self, instance: str, backup_id: str, backup: Backup) -> OperationHandle:
        self.lifecycle.check_open()
        request = CreateBackupRequest(parent=instance, backup_id=backup_id, backup=backup)
        query = operation_filter(CreateBackupMetadata, f"metadata.name:{instance}/backups/{backup_id}")
        return self.coordinator.start_or_resume(
            self.transport.operation_callable(Method.CREATE_BACKUP),
            request,
            self.project_name,
            lambda token: self.list_backup_operations(instance, 0, query, token),
            backup_start_time,
            self.operation_retry_settings,
            resource=instance,
        )

    def restore_database(self, instance: str, database_id: str, backup_name: str) -> OperationHandle:
        self.lifecycle.check_open()
        request = RestoreDatabaseRequest(parent=instance, database_id=database_id, backup=backup_name)
        query = operation_filter(RestoreDatabaseMetadata, f"metadata.name:{instance}/databases/{database_id}")
        return self.coordinator.start_or_resume(
            self.transport.operation_callable(Method.RESTORE_DATABASE),
            request,
            self.project_name,
            lambda token: self.list_database_operations(instance, 0, query, token),
            restore_start_time,
            self.operation_retry_settings,
            resource=instance,
        )

    # ── data plane ───────────────────────────────────────────────

    def create_session(
        self,
        database: str,
        labels: Mapping[str, str] | None = None,
        options: CallOptions | None = None,
    ) -> Session:
        request = CreateSessionRequest(database=database, labels=dict(labels or {}))
        return self._data_call(Method.CREATE_SESSION, request, database, options)

    def delete_session(self, name: str, options: CallOptions | None = None) -> None:
        self._data_call(Method.DELETE_SESSION, NameRequest(name=name), name, options)

    def execute_query(
        self,
        request: SessionRequest,
        consumer: ResultStreamConsumer,
        options: CallOptions | None = None,
    ) -> StreamingCall:
        """Start a result stream; nothing arrives until ``request(n)`` is called."""
        return self._stream_call(Method.EXECUTE_STREAMING_SQL, request, request.session, consumer, options)

    def read(
        self,
        request: ReadRequest,
        consumer: ResultStreamConsumer,
        options: CallOptions | None = None,
    ) -> StreamingCall:
        """Start a key-based read stream; flow control as for :meth:`execute_query`."""
        return self._stream_call(Method.STREAMING_READ, request, request.session, consumer, options)

    def begin_transaction(self, request: SessionRequest, options: CallOptions | None = None) -> Any:
        return self._data_call(Method.BEGIN_TRANSACTION, request, request.session, options)

    def commit(self, request: SessionRequest, options: CallOptions | None = None) -> Any:
        return self._data_call(Method.COMMIT, request, request.session, options)

    def rollback(self, request: SessionRequest, options: CallOptions | None = None) -> None:
        self._data_call(Method.ROLLBACK, request, request.session, options)

    # ── lifecycle ────────────────────────────────────────────────

    def shutdown(self) -> None:
        self.lifecycle.shutdown()

    def is_closed(self) -> bool:
        return self.lifecycle.is_closed()

    def __enter__(self) -> DatabaseRpc:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()


__all__ = ["DatabaseRpc", "database_id_from_statement"]
