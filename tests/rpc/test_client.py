"""Tests for the DatabaseRpc client surface against the fake transport."""

import pytest

from dbplane.core.errors import ClientClosedError, RpcError, StatusCode
from dbplane.core.settings import RpcSettings
from dbplane.rpc.client import DatabaseRpc, database_id_from_statement
from dbplane.rpc.models import (
    Backup,
    Database,
    Instance,
    InstanceConfig,
    OperationPage,
    Page,
    ReadRequest,
    Session,
    SessionRequest,
)
from dbplane.rpc.transport import Method
from tests._support.fakes import (
    INSTANCE,
    FakeOperationCallable,
    FakeTransport,
    RecordingConsumer,
    StatusError,
    backup_operation,
    create_database_operation,
)

PROJECT = "projects/test-project"
DATABASE = f"{INSTANCE}/databases/orders"
BACKUP = f"{INSTANCE}/backups/nightly"
SESSION = f"{DATABASE}/sessions/s1"


@pytest.fixture
def throttled(registry, clock):
    settings = RpcSettings(project_id="test-project", auto_throttle_administrative_requests=True)
    client = DatabaseRpc(settings, FakeTransport, rate_limiter_registry=registry, clock=clock, sleep=clock.sleep)
    yield client
    client.shutdown()


def page_of(*operations):
    return OperationPage(operations=operations)


# =============================================================================
# Throttling
# =============================================================================


class TestAdministrativeThrottling:
    def test_admin_calls_are_throttled(self, throttled, clock):
        for _ in range(3):
            throttled.get_database(DATABASE)
        assert clock.sleeps == [1.0, 1.0]

    def test_data_calls_are_never_throttled(self, throttled, clock):
        for _ in range(5):
            throttled.commit(SessionRequest(session=SESSION))
        assert clock.sleeps == []
        assert len(throttled.transport.calls_for(Method.COMMIT)) == 5

    def test_clients_for_one_project_share_a_bucket(self, throttled, registry, clock):
        settings = RpcSettings(project_id="test-project", auto_throttle_administrative_requests=True)
        with DatabaseRpc(settings, FakeTransport, rate_limiter_registry=registry, clock=clock, sleep=clock.sleep) as other:
            throttled.get_database(DATABASE)
            other.get_database(DATABASE)
        assert clock.sleeps == [1.0]

    def test_disabled_by_default(self, rpc, clock):
        for _ in range(3):
            rpc.drop_database(DATABASE)
        assert clock.sleeps == []

    @pytest.mark.parametrize(
        "method_name, args",
        [
            ("list_instance_configs", ()),
            ("get_instance_config", (f"{PROJECT}/instanceConfigs/regional-us",)),
            ("list_instances", ()),
            ("get_instance", (INSTANCE,)),
            ("delete_instance", (INSTANCE,)),
            ("create_instance", (PROJECT, "main", Instance(config="regional-us", node_count=1))),
            ("update_instance", (Instance(name=INSTANCE, node_count=3), ["node_count"])),
            ("list_databases", (INSTANCE,)),
            ("get_database_ddl", (DATABASE,)),
            ("list_backups", (INSTANCE,)),
            ("get_backup", (BACKUP,)),
            ("update_backup", (Backup(name=BACKUP), ["expire_time"])),
            ("delete_backup", (BACKUP,)),
        ],
    )
    def test_every_admin_method_takes_a_permit(self, throttled, clock, method_name, args):
        throttled.get_database(DATABASE)
        getattr(throttled, method_name)(*args)
        assert clock.sleeps == [1.0]

    def test_sessions_and_reads_are_never_throttled(self, throttled, clock):
        throttled.get_database(DATABASE)
        throttled.create_session(DATABASE)
        throttled.read(ReadRequest(session=SESSION, table="orders", columns=("id",)), RecordingConsumer())
        throttled.delete_session(SESSION)
        assert clock.sleeps == []


# =============================================================================
# Unary calls
# =============================================================================


class TestUnaryCalls:
    def test_get_database_carries_resource_header(self, rpc):
        rpc.transport.on_unary(Method.GET_DATABASE, lambda request, ctx: Database(name=request.name))

        assert rpc.get_database(DATABASE).name == DATABASE
        [(_, _, context)] = rpc.transport.unary_calls
        assert context.extra_headers["google-cloud-resource-prefix"] == DATABASE

    def test_list_operations_request(self, rpc):
        rpc.transport.on_unary(Method.LIST_BACKUP_OPERATIONS, lambda request, ctx: page_of())

        page = rpc.list_backup_operations(INSTANCE, page_size=50, filter="done:false", page_token="t1")

        assert page.is_last
        [(_, request, _)] = rpc.transport.unary_calls
        assert (request.parent, request.page_size, request.filter, request.page_token) == (INSTANCE, 50, "done:false", "t1")

    def test_errors_are_translated(self, rpc):
        def denied(request, ctx):
            raise StatusError(StatusCode.NOT_FOUND, "no such operation")

        rpc.transport.on_unary(Method.GET_OPERATION, denied)
        with pytest.raises(RpcError) as exc_info:
            rpc.get_operation(f"{DATABASE}/operations/op-9")
        assert exc_info.value.status_code is StatusCode.NOT_FOUND

    def test_transport_gets_a_managed_executor(self, rpc):
        assert rpc.transport.executor in rpc.executor_provider.executors


class TestResourceAdministration:
    def test_instance_configs_are_addressed_to_the_project(self, rpc):
        rpc.transport.on_unary(
            Method.LIST_INSTANCE_CONFIGS,
            lambda request, ctx: Page[InstanceConfig](items=(InstanceConfig(name=f"{PROJECT}/instanceConfigs/eu"),)),
        )

        page = rpc.list_instance_configs(page_size=10)

        assert [config.name for config in page.items] == [f"{PROJECT}/instanceConfigs/eu"]
        assert page.is_last
        [(_, request, context)] = rpc.transport.unary_calls
        assert (request.parent, request.page_size) == (PROJECT, 10)
        assert context.resource == PROJECT
        assert context.extra_headers["google-cloud-resource-prefix"] == PROJECT

    def test_list_instances_pages(self, rpc):
        rpc.transport.on_unary(
            Method.LIST_INSTANCES,
            lambda request, ctx: Page[Instance](items=(Instance(name=INSTANCE),), next_page_token="next"),
        )

        page = rpc.list_instances(page_size=1, filter="labels.env:prod")

        assert page.is_last is False
        assert page.items[0].name == INSTANCE
        [(_, request, _)] = rpc.transport.unary_calls
        assert (request.parent, request.filter, request.page_token) == (PROJECT, "labels.env:prod", None)

    def test_create_instance_starts_one_operation(self, rpc):
        handle = rpc.create_instance(PROJECT, "main", Instance(config="regional-us", node_count=1))

        ops = rpc.transport.operation_callables[Method.CREATE_INSTANCE]
        [(request, context)] = ops.fresh_calls
        assert (request.parent, request.instance_id, request.instance.node_count) == (PROJECT, "main", 1)
        assert context.resource == PROJECT
        assert handle.resumed is False
        assert handle.name == ops.created[0]

    def test_update_instance_addresses_the_instance(self, rpc):
        rpc.update_instance(Instance(name=INSTANCE, node_count=3), ["node_count"])

        [(request, context)] = rpc.transport.operation_callables[Method.UPDATE_INSTANCE].fresh_calls
        assert request.field_mask == ("node_count",)
        assert context.resource == INSTANCE

    def test_get_database_ddl_returns_statements(self, rpc):
        rpc.transport.on_unary(Method.GET_DATABASE_DDL, lambda request, ctx: ("CREATE TABLE t (id INT64)",))

        assert rpc.get_database_ddl(DATABASE) == ["CREATE TABLE t (id INT64)"]

    def test_list_databases_request(self, rpc):
        rpc.transport.on_unary(Method.LIST_DATABASES, lambda request, ctx: Page[Database]())

        assert rpc.list_databases(INSTANCE, page_size=5, page_token="t2").items == ()
        [(_, request, context)] = rpc.transport.unary_calls
        assert (request.parent, request.page_size, request.page_token) == (INSTANCE, 5, "t2")
        assert context.resource == INSTANCE

    def test_update_backup_sends_mask(self, rpc):
        rpc.transport.on_unary(Method.UPDATE_BACKUP, lambda request, ctx: request.backup)

        updated = rpc.update_backup(Backup(name=BACKUP, database=DATABASE), ["expire_time"])

        assert updated.name == BACKUP
        [(_, request, context)] = rpc.transport.unary_calls
        assert request.update_mask == ("expire_time",)
        assert context.resource == BACKUP

    def test_list_backups_request(self, rpc):
        rpc.transport.on_unary(Method.LIST_BACKUPS, lambda request, ctx: Page[Backup](items=(Backup(name=BACKUP),)))

        page = rpc.list_backups(INSTANCE, filter="database:orders")

        assert page.items[0].name == BACKUP
        [(_, request, _)] = rpc.transport.unary_calls
        assert request.filter == "database:orders"


class TestSessions:
    def test_create_session_is_scoped_to_database(self, rpc):
        rpc.transport.on_unary(Method.CREATE_SESSION, lambda request, ctx: Session(name=SESSION, labels=request.labels))

        session = rpc.create_session(DATABASE, labels={"team": "billing"})

        assert session.name == SESSION
        assert session.labels == {"team": "billing"}
        [(_, request, context)] = rpc.transport.unary_calls
        assert request.database == DATABASE
        assert context.extra_headers["google-cloud-resource-prefix"] == DATABASE

    def test_delete_session(self, rpc):
        rpc.delete_session(SESSION)

        [(method, request, context)] = rpc.transport.unary_calls
        assert method is Method.DELETE_SESSION
        assert request.name == SESSION
        assert context.resource == SESSION


# =============================================================================
# Long-running operations
# =============================================================================


class TestDatabaseIdFromStatement:
    @pytest.mark.parametrize(
        "statement, expected",
        [
            ("CREATE DATABASE orders", "orders"),
            ("create database `order-history`", "order-history"),
            ("  CREATE   DATABASE  `x` ", "x"),
        ],
    )
    def test_parses(self, statement, expected):
        assert database_id_from_statement(statement) == expected

    def test_rejects_other_statements(self):
        with pytest.raises(RpcError) as exc_info:
            database_id_from_statement("CREATE TABLE t (id INT64)")
        assert exc_info.value.status_code is StatusCode.INVALID_ARGUMENT


class TestOperationStartingCalls:
    def test_create_database_resumes_after_unavailable(self, rpc, clock):
        ops = FakeOperationCallable(start_failures=[StatusError(StatusCode.UNAVAILABLE)], result="db-ready")
        rpc.transport.operation_callables[Method.CREATE_DATABASE] = ops
        ours = create_database_operation(f"{DATABASE}/operations/op-created", create_time=clock.now())
        rpc.transport.on_unary(Method.LIST_DATABASE_OPERATIONS, lambda request, ctx: page_of(ours))

        handle = rpc.create_database(INSTANCE, "CREATE DATABASE `orders`")

        assert handle.resumed is True
        assert handle.result() == "db-ready"
        assert ops.resumed_names == [ours.name]
        assert len(ops.fresh_calls) == 1
        [(_, request, _)] = rpc.transport.calls_for(Method.LIST_DATABASE_OPERATIONS)
        assert request.filter == (
            "(metadata.@type:type.googleapis.com/admin.database.v1.CreateDatabaseMetadata) "
            f"AND (name:{DATABASE}/operations/)"
        )

    def test_create_database_rejects_bad_statement_before_calling(self, rpc):
        with pytest.raises(RpcError):
            rpc.create_database(INSTANCE, "DROP DATABASE orders")
        assert rpc.transport.operation_callables == {}

    def test_create_backup_filters_on_backup_name(self, rpc, clock):
        ops = FakeOperationCallable(start_failures=[StatusError(StatusCode.DEADLINE_EXCEEDED)])
        rpc.transport.operation_callables[Method.CREATE_BACKUP] = ops
        ours = backup_operation(f"{INSTANCE}/backups/nightly/operations/b1", start=clock.now())
        rpc.transport.on_unary(Method.LIST_BACKUP_OPERATIONS, lambda request, ctx: page_of(ours))

        handle = rpc.create_backup(INSTANCE, "nightly", Backup(database=DATABASE))

        assert handle.name == ours.name
        [(_, request, _)] = rpc.transport.calls_for(Method.LIST_BACKUP_OPERATIONS)
        assert request.filter.endswith(f"AND (metadata.name:{INSTANCE}/backups/nightly)")
        [(create_request, _)] = ops.fresh_calls
        assert create_request.backup_id == "nightly"

    def test_restore_lists_database_operations(self, rpc):
        ops = FakeOperationCallable(start_failures=[StatusError(StatusCode.UNAVAILABLE)])
        rpc.transport.operation_callables[Method.RESTORE_DATABASE] = ops
        rpc.transport.on_unary(Method.LIST_DATABASE_OPERATIONS, lambda request, ctx: page_of())

        handle = rpc.restore_database(INSTANCE, "orders", f"{INSTANCE}/backups/nightly")

        assert handle.resumed is False
        assert len(ops.fresh_calls) == 2
        [(_, request, _)] = rpc.transport.calls_for(Method.LIST_DATABASE_OPERATIONS)
        assert "RestoreDatabaseMetadata" in request.filter
        assert request.filter.endswith(f"AND (metadata.name:{DATABASE})")

    def test_update_ddl_resumes_on_already_exists(self, rpc):
        ops = FakeOperationCallable(start_failures=[StatusError(StatusCode.ALREADY_EXISTS)])
        rpc.transport.operation_callables[Method.UPDATE_DATABASE_DDL] = ops

        handle = rpc.update_database_ddl(DATABASE, ["CREATE INDEX i ON t (c)"], operation_id="add_index_i")

        assert handle.resumed is True
        assert handle.name == f"{DATABASE}/operations/add_index_i"

    def test_update_ddl_without_operation_id_raises(self, rpc):
        ops = FakeOperationCallable(start_failures=[StatusError(StatusCode.ALREADY_EXISTS)])
        rpc.transport.operation_callables[Method.UPDATE_DATABASE_DDL] = ops

        with pytest.raises(RpcError) as exc_info:
            rpc.update_database_ddl(DATABASE, ["CREATE INDEX i ON t (c)"])
        assert exc_info.value.status_code is StatusCode.ALREADY_EXISTS
        assert ops.resumed_names == []


# =============================================================================
# Streams
# =============================================================================


class TestExecuteQuery:
    def test_stream_is_watched_and_flow_controlled(self, rpc):
        consumer = RecordingConsumer()
        call = rpc.execute_query(SessionRequest(session=SESSION, payload={"sql": "SELECT 1"}), consumer)

        [(method, _, observer, context, controller)] = rpc.transport.streams
        assert method is Method.EXECUTE_STREAMING_SQL
        assert controller.auto_flow_control is False
        assert len(rpc.watchdog) == 1
        assert context.extra_headers["google-cloud-resource-prefix"] == DATABASE

        call.request(10)
        observer.on_response({"row": 1})
        assert controller.requested == [10]
        assert consumer.results == [{"row": 1}]

    def test_stalled_stream_is_expired_by_watchdog(self, rpc, clock):
        consumer = RecordingConsumer()
        call = rpc.execute_query(SessionRequest(session=SESSION), consumer)
        call.request(1)

        clock.advance(rpc.settings.watchdog_timeout_seconds + 1)
        assert rpc.watchdog.check() == 1

        [error] = consumer.errors
        assert error.status_code is StatusCode.DEADLINE_EXCEEDED
        assert call.finished is True

    def test_failed_start_leaves_nothing_watched(self, rpc, clock):
        rpc.transport.stream_error = StatusError(StatusCode.UNAVAILABLE, "connection refused")
        consumer = RecordingConsumer()

        with pytest.raises(RpcError) as exc_info:
            rpc.execute_query(SessionRequest(session=SESSION), consumer)

        assert exc_info.value.status_code is StatusCode.UNAVAILABLE
        assert len(rpc.watchdog) == 0
        clock.advance(rpc.settings.watchdog_timeout_seconds + 1)
        assert rpc.watchdog.check() == 0
        assert consumer.errors == []

    def test_read_is_a_flow_controlled_stream(self, rpc):
        consumer = RecordingConsumer()
        request = ReadRequest(session=SESSION, table="orders", columns=("id", "total"), keys=(1, 2))

        call = rpc.read(request, consumer)

        [(method, sent, observer, context, controller)] = rpc.transport.streams
        assert method is Method.STREAMING_READ
        assert sent.columns == ("id", "total")
        assert controller.auto_flow_control is False
        assert context.extra_headers["google-cloud-resource-prefix"] == DATABASE
        call.request(1)
        observer.on_response({"id": 1})
        observer.on_complete()
        assert consumer.results == [{"id": 1}]
        assert consumer.completed == 1


# =============================================================================
# Lifecycle
# =============================================================================


class TestClientLifecycle:
    def test_calls_after_shutdown_fail_fast(self, rpc):
        rpc.shutdown()
        assert rpc.is_closed() is True
        with pytest.raises(ClientClosedError):
            rpc.get_database(DATABASE)
        with pytest.raises(ClientClosedError):
            rpc.commit(SessionRequest(session=SESSION))
        with pytest.raises(ClientClosedError):
            rpc.create_database(INSTANCE, "CREATE DATABASE orders")
        with pytest.raises(ClientClosedError):
            rpc.execute_query(SessionRequest(session=SESSION), RecordingConsumer())
        assert rpc.transport.unary_calls == []

    def test_context_manager_shuts_down(self, settings, registry, clock):
        with DatabaseRpc(settings, FakeTransport, rate_limiter_registry=registry, clock=clock) as client:
            assert client.is_closed() is False
        assert client.is_closed() is True
        assert client.transport.closed is True
        assert client.watchdog.is_shutdown() is True

    def test_shutdown_during_backoff_surfaces_client_closed(self, settings, registry, clock, fast_retry):
        clients = []

        def sleep_then_shut_down(seconds):
            clock.sleep(seconds)
            clients[0].shutdown()

        client = DatabaseRpc(
            settings,
            FakeTransport,
            rate_limiter_registry=registry,
            clock=clock,
            sleep=sleep_then_shut_down,
            operation_retry_settings=fast_retry,
        )
        clients.append(client)
        ops = FakeOperationCallable(start_failures=[StatusError(StatusCode.UNAVAILABLE)])
        client.transport.operation_callables[Method.CREATE_DATABASE] = ops

        with pytest.raises(ClientClosedError) as exc_info:
            client.create_database(INSTANCE, "CREATE DATABASE orders")

        assert exc_info.value.context.resource == INSTANCE
        assert client.transport.calls_for(Method.LIST_DATABASE_OPERATIONS) == []
        assert len(ops.fresh_calls) == 1
