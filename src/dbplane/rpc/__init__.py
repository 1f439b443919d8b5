"""dbplane RPC layer.

::

    models.py      Operation, OperationPage, Page, PackedMessage, CallOptions, InvocationContext
    transport.py   Transport protocols, Method, get_result()
    context.py     HeaderProvider, CallContextBuilder
    operations.py  most_recent_operation, attempt state machine, OperationResumptionCoordinator
    lifecycle.py   ManagedExecutorProvider, StreamWatchdog, ResourceLifecycleManager
    streaming.py   ResultStreamObserver, StreamingCall
    client.py      DatabaseRpc
"""

from dbplane.rpc.client import DatabaseRpc
from dbplane.rpc.context import CallContextBuilder, HeaderProvider
from dbplane.rpc.lifecycle import ManagedExecutorProvider, ResourceLifecycleManager, StreamWatchdog
from dbplane.rpc.models import CallOptions, InvocationContext, Operation, OperationPage, Page
from dbplane.rpc.operations import (
    OperationHandle,
    OperationResumptionCoordinator,
    most_recent_operation,
    operation_start_time,
)
from dbplane.rpc.streaming import StreamingCall

__all__ = [
    "DatabaseRpc",
    "CallContextBuilder",
    "HeaderProvider",
    "ManagedExecutorProvider",
    "ResourceLifecycleManager",
    "StreamWatchdog",
    "CallOptions",
    "InvocationContext",
    "Operation",
    "OperationPage",
    "Page",
    "OperationHandle",
    "OperationResumptionCoordinator",
    "most_recent_operation",
    "operation_start_time",
    "StreamingCall",
]
