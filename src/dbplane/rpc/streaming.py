"""Flow-controlled server streams.

Result streams are pulled, not pushed: the transport delivers a message
only after the consumer has asked for it with :meth:`StreamingCall.request`.
Automatic inbound flow control is switched off as soon as the stream
starts.

Every stream ends exactly once for the consumer: ``on_completed``, or
``on_error`` with an :class:`RpcError` (a local ``cancel()`` arrives as
:class:`RpcCancelledError`, a watchdog expiry as DEADLINE_EXCEEDED).
"""

from __future__ import annotations

import threading
from typing import Any, Protocol

from dbplane.core.errors import RpcCancelledError, RpcError, translate_error
from dbplane.core.logging import get_logger
from dbplane.execution.retry import SYSTEM_CLOCK, Clock
from dbplane.rpc.transport import StreamController

logger = get_logger(__name__)


class ResultStreamConsumer(Protocol):
    def on_partial_result(self, result: Any) -> None: ...

    def on_completed(self) -> None: ...

    def on_error(self, error: RpcError) -> None: ...


class ResultStreamObserver:
    """Transport-facing observer that tracks demand and activity."""

    def __init__(self, consumer: ResultStreamConsumer, clock: Clock = SYSTEM_CLOCK):
        self._consumer = consumer
        self._clock = clock
        self._lock = threading.Lock()
        self._controller: StreamController | None = None
        self._pending_requests = 0
        self._outstanding = 0
        self._finished = False
        self._last_activity = clock.monotonic()

    # ── WatchedStream ────────────────────────────────────────────

    @property
    def outstanding(self) -> int:
        with self._lock:
            return self._outstanding

    @property
    def last_activity(self) -> float:
        with self._lock:
            return self._last_activity

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    def expire(self, error: RpcError) -> None:
        self._terminate(error)

    # ── ResponseObserver ─────────────────────────────────────────

    def on_start(self, controller: StreamController) -> None:
        controller.disable_auto_inbound_flow_control()
        with self._lock:
            self._controller = controller
            finished = self._finished
            pending, self._pending_requests = self._pending_requests, 0
        if finished:
            controller.cancel()
        elif pending:
            controller.request(pending)

    def on_response(self, message: Any) -> None:
        with self._lock:
            if self._finished:
                return
            self._outstanding = max(0, self._outstanding - 1)
            self._last_activity = self._clock.monotonic()
        self._consumer.on_partial_result(message)

    def on_error(self, error: BaseException) -> None:
        self._terminate(translate_error(error))

    def on_complete(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
        self._consumer.on_completed()

    # ── Consumer-facing ──────────────────────────────────────────

    def request(self, count: int) -> None:
        if count <= 0:
            raise ValueError(f"count must be positive, got {count}")
        with self._lock:
            if self._finished:
                return
            self._outstanding += count
            self._last_activity = self._clock.monotonic()
            controller = self._controller
            if controller is None:
                self._pending_requests += count
                return
        controller.request(count)

    def cancel(self, message: str | None = None) -> None:
        self._terminate(RpcCancelledError(message or "Stream cancelled by client"))

    def abandon(self) -> None:
        """Finish silently; used when starting the call raised to the caller."""
        with self._lock:
            self._finished = True
            controller = self._controller
        if controller is not None:
            controller.cancel()

    def _terminate(self, error: RpcError) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            controller = self._controller
        if controller is not None:
            controller.cancel()
        logger.debug("stream_terminated", status_code=error.status_code.value)
        self._consumer.on_error(error)


class StreamingCall:
    """Handle returned to callers of streaming methods."""

    def __init__(self, observer: ResultStreamObserver):
        self._observer = observer

    def request(self, count: int) -> None:
        """Ask the server for ``count`` more messages."""
        self._observer.request(count)

    def cancel(self, message: str | None = None) -> None:
        self._observer.cancel(message)

    @property
    def finished(self) -> bool:
        return self._observer.finished


__all__ = [
    "ResultStreamConsumer",
    "ResultStreamObserver",
    "StreamingCall",
]
