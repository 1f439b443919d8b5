"""Executor pools, stream watchdog and orderly shutdown.

ARCHITECTURE
────────────
::

    ManagedExecutorProvider
      ├── .get_executor()       ─ new ThreadPoolExecutor per channel, tracked
      ├── .shutdown()           ─ stop accepting work on every pool
      └── .await_termination()  ─ bounded wait per pool, stragglers abandoned

    StreamWatchdog              ─ daemon thread; cancels streams that wait
                                  or idle past their timeouts

    ResourceLifecycleManager
      └── .shutdown()           ─ phase 1: signal transport, watchdog, pools
                                  phase 2: bounded await of each, in order

Pools are never closed behind the caller's back; only ``shutdown()`` drains
them.  Shutdown is idempotent and ``is_closed()`` flips before any teardown
work starts, so concurrent callers fail fast with ``ClientClosedError``.
"""

from __future__ import annotations

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from typing import TYPE_CHECKING, Protocol

from dbplane.core.errors import (
    ClientClosedError,
    RpcCancelledError,
    RpcError,
    StatusCode,
)
from dbplane.core.logging import get_logger
from dbplane.core.settings import DEFAULT_MIN_THREAD_COUNT, DEFAULT_TERMINATION_TIMEOUT_SECONDS
from dbplane.execution.retry import SYSTEM_CLOCK, Clock

if TYPE_CHECKING:
    from dbplane.rpc.transport import Transport

logger = get_logger(__name__)


def _await_pool(pool: ThreadPoolExecutor, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for ``pool`` to finish; True if it did.

    Only this wait is bounded.  The pool's workers are non-daemon and
    ``concurrent.futures`` joins them from its interpreter-exit hook.
    """
    waiter = threading.Thread(
        target=pool.shutdown,
        kwargs={"wait": True},
        name="dbplane-pool-await",
        daemon=True,
    )
    waiter.start()
    waiter.join(timeout)
    return not waiter.is_alive()


class ManagedExecutorProvider:
    """Creates and tracks the worker pools backing transport channels.

    Each pool gets ``max(min_thread_count, os.cpu_count())`` threads.
    """

    def __init__(
        self,
        min_thread_count: int = DEFAULT_MIN_THREAD_COUNT,
        thread_name_prefix: str = "dbplane-transport",
    ):
        self.min_thread_count = min_thread_count
        self.thread_name_prefix = thread_name_prefix
        self._executors: list[ThreadPoolExecutor] = []
        self._lock = threading.Lock()
        self._shutdown = False

    @property
    def thread_count(self) -> int:
        return max(self.min_thread_count, os.cpu_count() or 1)

    def should_auto_close(self) -> bool:
        return False

    def get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._shutdown:
                raise ClientClosedError("Executor provider has been shut down")
            executor = ThreadPoolExecutor(
                max_workers=self.thread_count,
                thread_name_prefix=f"{self.thread_name_prefix}-{len(self._executors)}",
            )
            self._executors.append(executor)
            logger.debug("executor_created", index=len(self._executors) - 1, threads=self.thread_count)
            return executor

    @property
    def executors(self) -> tuple[ThreadPoolExecutor, ...]:
        with self._lock:
            return tuple(self._executors)

    def shutdown(self) -> None:
        """Stop accepting work on every tracked pool; does not wait."""
        with self._lock:
            self._shutdown = True
            pools = list(self._executors)
        for pool in pools:
            pool.shutdown(wait=False)

    def await_termination(
        self,
        timeout_per_pool: float = DEFAULT_TERMINATION_TIMEOUT_SECONDS,
    ) -> list[ThreadPoolExecutor]:
        """Wait for each pool in turn; returns the pools that did not finish.

        Abandoning a pool bounds ``shutdown()``, not process exit: a task
        stuck in an abandoned pool still holds its worker thread, and the
        interpreter joins that thread before it exits.  Transports that can
        block indefinitely must enforce their own per-call deadlines.
        """
        with self._lock:
            pools = list(self._executors)
        abandoned = []
        for index, pool in enumerate(pools):
            if not _await_pool(pool, timeout_per_pool):
                logger.warning(
                    "executor_termination_timeout",
                    index=index,
                    timeout_seconds=timeout_per_pool,
                )
                abandoned.append(pool)
        return abandoned


class WatchedStream(Protocol):
    """What the watchdog needs from a stream."""

    @property
    def outstanding(self) -> int: ...

    @property
    def last_activity(self) -> float: ...

    @property
    def finished(self) -> bool: ...

    def expire(self, error: RpcError) -> None: ...


class StreamWatchdog:
    """Cancels streams that wait or idle too long.

    A stream with outstanding requested messages that has seen no activity
    for ``wait_timeout`` seconds, or one with no outstanding demand that
    has been idle for ``idle_timeout`` seconds, is expired with
    DEADLINE_EXCEEDED.  Checks run every ``period`` seconds on a daemon
    thread started by the first :meth:`watch`.
    """

    def __init__(self, period: float, clock: Clock = SYSTEM_CLOCK):
        self.period = period
        self._clock = clock
        self._streams: dict[WatchedStream, tuple[float, float]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def watch(self, stream: WatchedStream, wait_timeout: float, idle_timeout: float) -> None:
        with self._lock:
            if self._stop.is_set():
                raise ClientClosedError("Stream watchdog has been shut down")
            self._streams[stream] = (wait_timeout, idle_timeout)
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="dbplane-watchdog", daemon=True)
                self._thread.start()

    def unwatch(self, stream: WatchedStream) -> None:
        with self._lock:
            self._streams.pop(stream, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._streams)

    def check(self) -> int:
        """Run one pass; returns the number of streams expired."""
        now = self._clock.monotonic()
        with self._lock:
            entries = list(self._streams.items())

        expired = 0
        for stream, (wait_timeout, idle_timeout) in entries:
            if stream.finished:
                self.unwatch(stream)
                continue
            inactive = now - stream.last_activity
            if stream.outstanding > 0 and inactive > wait_timeout:
                reason, limit = "wait", wait_timeout
            elif stream.outstanding == 0 and inactive > idle_timeout:
                reason, limit = "idle", idle_timeout
            else:
                continue
            logger.info("stream_watchdog_cancelled", reason=reason, inactive_seconds=round(inactive, 3))
            self.unwatch(stream)
            stream.expire(
                RpcError(
                    f"Stream {reason} timeout of {limit}s exceeded",
                    status_code=StatusCode.DEADLINE_EXCEEDED,
                )
            )
            expired += 1
        return expired

    def _run(self) -> None:
        while not self._stop.wait(self.period):
            try:
                self.check()
            except Exception as e:
                logger.warning("stream_watchdog_check_failed", error=str(e))

    def shutdown(self) -> None:
        self._stop.set()

    def is_shutdown(self) -> bool:
        return self._stop.is_set()

    def await_termination(self, timeout: float) -> bool:
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()


class ResourceLifecycleManager:
    """Owns teardown of the transport, watchdog and executor pools."""

    def __init__(
        self,
        executor_provider: ManagedExecutorProvider,
        watchdog: StreamWatchdog,
        transport: Transport | None = None,
        *,
        termination_timeout: float = DEFAULT_TERMINATION_TIMEOUT_SECONDS,
    ):
        self.executor_provider = executor_provider
        self.watchdog = watchdog
        self.transport = transport
        self.termination_timeout = termination_timeout
        self._closed = False
        self._lock = threading.Lock()

    def attach_transport(self, transport: Transport) -> None:
        self.transport = transport

    def is_closed(self) -> bool:
        return self._closed

    def check_open(self) -> None:
        if self._closed:
            raise ClientClosedError()

    def shutdown(self) -> None:
        """Two-phase bounded shutdown; later calls return immediately.

        Raises:
            RpcCancelledError: interrupted while awaiting termination
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        logger.info("rpc_shutdown_started", executors=len(self.executor_provider.executors))

        try:
            # Callbacks run LIFO: phase 2 (await) is registered first, phase 1
            # (signal) last, each in reverse.  A failing step does not stop the rest.
            with ExitStack() as stack:
                stack.callback(self.executor_provider.await_termination, self.termination_timeout)
                stack.callback(self._await_watchdog)
                if self.transport is not None:
                    stack.callback(self._await_transport)
                stack.callback(self.executor_provider.shutdown)
                stack.callback(self.watchdog.shutdown)
                if self.transport is not None:
                    stack.callback(self.transport.close)
        except KeyboardInterrupt as e:
            logger.warning("rpc_shutdown_interrupted")
            raise RpcCancelledError("Interrupted while awaiting shutdown", cause=e) from e

        logger.info("rpc_shutdown_completed")

    def _await_transport(self) -> None:
        assert self.transport is not None
        if not self.transport.await_termination(self.termination_timeout):
            logger.warning("transport_termination_timeout", timeout_seconds=self.termination_timeout)

    def _await_watchdog(self) -> None:
        if not self.watchdog.await_termination(self.termination_timeout):
            logger.warning("watchdog_termination_timeout", timeout_seconds=self.termination_timeout)


__all__ = [
    "ManagedExecutorProvider",
    "StreamWatchdog",
    "WatchedStream",
    "ResourceLifecycleManager",
]
