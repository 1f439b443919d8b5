"""Long-running operation start-or-resume.

Starting an administrative operation (create database, create backup,
restore) is not idempotent.  When the starting call fails with a transient
error the request may or may not have reached the server; re-issuing it
blindly can create a second operation or fail with ALREADY_EXISTS even
though the first one is running fine.

Before every retry the coordinator therefore lists the operations the
earlier attempt could have created and, if one of them is plausibly ours,
resumes it by name instead of starting again.

ATTEMPT STATE MACHINE
─────────────────────
::

    NOT_STARTED ──► ATTEMPTED ──► SUCCEEDED
                       ▲   │
                       │   ├────► TERMINAL_FAILURE
                       │   ▼
                    RETRYABLE_FAILURE        (next attempt lists operations
                                              and resumes when it finds one)

MATCHING (``most_recent_operation``)
────────────────────────────────────
All pages are scanned once.  A candidate whose start time is at or after
the first attempt's start (``initial_call_time``) wins if it is strictly
later than the current best.  If nothing has matched yet and a candidate
reports no start time and is still running, it is taken immediately and
the scan stops.  That last rule is a heuristic: with several same-shaped
operations in flight it can pick the wrong one.

Tags:
    dbplane, rpc, long-running-operation, retry, resumption
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from dbplane.core.errors import (
    TRANSIENT_STATUS_CODES,
    DbPlaneError,
    RpcCancelledError,
    translate_error,
)
from dbplane.core.logging import get_logger
from dbplane.execution.rate_limit import AdministrativeRateLimiter
from dbplane.execution.retry import SYSTEM_CLOCK, Clock, RetrySettings, run_with_retries
from dbplane.rpc.context import CallContextBuilder
from dbplane.rpc.models import (
    CallOptions,
    CreateBackupMetadata,
    Database,
    InvocationContext,
    Operation,
    OperationPage,
    RestoreDatabaseMetadata,
    WireMessage,
    present_timestamp,
)
from dbplane.rpc.transport import OperationCallable, OperationFuture, get_result

logger = get_logger(__name__)

OperationLister = Callable[[str | None], OperationPage]
StartTimeExtractor = Callable[[Operation], datetime | None]

# Initial-call retry budget for operation-starting calls.
DEFAULT_OPERATION_RETRY_SETTINGS = RetrySettings(
    initial_retry_delay=1.0,
    retry_delay_multiplier=1.3,
    max_retry_delay=32.0,
    total_timeout=600.0,
)


# =============================================================================
# TIMESTAMPS
# =============================================================================


def compare_timestamps(a: datetime | None, b: datetime | None) -> int:
    """Three-way compare; ``None`` sorts below every timestamp."""
    if a is None and b is None:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    return (a > b) - (a < b)


def operation_start_time(operation: Operation) -> datetime | None:
    """The start time the service reports on the operation itself."""
    return present_timestamp(operation.start_time)


def database_create_time(operation: Operation) -> datetime | None:
    """Start time of a create-database operation: the new database's create time.

    Running operations have no database yet and fall back to
    :func:`operation_start_time`.
    """
    if not operation.done or operation.response is None:
        return operation_start_time(operation)
    return present_timestamp(operation.response.unpack(Database).create_time)


def progress_start_time(
    metadata_cls: type[CreateBackupMetadata] | type[RestoreDatabaseMetadata],
) -> StartTimeExtractor:
    """Extractor reading ``metadata.progress.start_time`` as ``metadata_cls``."""

    def extract(operation: Operation) -> datetime | None:
        if operation.metadata is None:
            return operation_start_time(operation)
        progress = operation.metadata.unpack(metadata_cls).progress
        if progress is None:
            return operation_start_time(operation)
        return present_timestamp(progress.start_time)

    extract.__name__ = f"{metadata_cls.__name__.lower()}_start_time"
    return extract


backup_start_time = progress_start_time(CreateBackupMetadata)
restore_start_time = progress_start_time(RestoreDatabaseMetadata)


def operation_filter(metadata_cls: type[WireMessage], name_clause: str) -> str:
    """Server-side filter selecting operations of one metadata type."""
    return f"(metadata.@type:{metadata_cls.type_url()}) AND ({name_clause})"


def most_recent_operation(
    lister: OperationLister,
    start_time_extractor: StartTimeExtractor,
    initial_call_time: datetime,
) -> Operation | None:
    """Find the operation most plausibly started by an earlier attempt.

    Never returns an operation whose start time is known and earlier than
    ``initial_call_time``.  An extractor that raises counts as an unknown
    start time; naive timestamps on either side are read as UTC.
    """
    initial_call_time = present_timestamp(initial_call_time) or initial_call_time
    best: Operation | None = None
    best_start: datetime | None = None
    page_token: str | None = None
    pages = 0

    while True:
        page = lister(page_token)
        pages += 1
        for operation in page.operations:
            try:
                start = present_timestamp(start_time_extractor(operation))
            except Exception as e:
                logger.warning(
                    "start_time_decode_failed",
                    operation_name=operation.name,
                    error=str(e),
                )
                start = None

            if start is not None:
                if compare_timestamps(start, initial_call_time) >= 0 and (
                    best is None or compare_timestamps(start, best_start) > 0
                ):
                    best, best_start = operation, start
            elif best is None and best_start is None and not operation.done:
                # Known limitation: assumes the only in-flight match is ours.
                logger.debug(
                    "operation_matched_without_start_time",
                    operation_name=operation.name,
                    pages=pages,
                )
                return operation

        if page.is_last:
            return best
        page_token = page.next_page_token


# =============================================================================
# ATTEMPT STATE MACHINE
# =============================================================================


class InvalidTransitionError(ValueError):
    """Raised when an attempt moves between states that are not connected."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid AttemptState transition: {current} → {target}")


class AttemptState(str, Enum):
    """Progress of one logical start-or-resume call."""

    NOT_STARTED = "not_started"
    ATTEMPTED = "attempted"
    SUCCEEDED = "succeeded"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


VALID_TRANSITIONS: dict[AttemptState, frozenset[AttemptState]] = {
    AttemptState.NOT_STARTED: frozenset({AttemptState.ATTEMPTED}),
    AttemptState.ATTEMPTED: frozenset({
        AttemptState.SUCCEEDED,
        AttemptState.RETRYABLE_FAILURE,
        AttemptState.TERMINAL_FAILURE,
    }),
    AttemptState.RETRYABLE_FAILURE: frozenset({AttemptState.ATTEMPTED}),
    AttemptState.SUCCEEDED: frozenset(),
    AttemptState.TERMINAL_FAILURE: frozenset(),
}


def validate_transition(current: AttemptState, target: AttemptState) -> None:
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


class OperationFutureRetryAlgorithm:
    """Classifies the outcome of one attempt.

    Retryable: the attempt raised, or its initial future failed, with
    DEADLINE_EXCEEDED or UNAVAILABLE.  Everything else is terminal.  Blocks
    on the initial future when the attempt itself returned normally.
    """

    retryable_codes = TRANSIENT_STATUS_CODES

    def classify(self, error: BaseException | None, response: OperationFuture | None) -> AttemptState:
        if error is not None:
            return self._classify_error(error)
        if response is None:
            return AttemptState.TERMINAL_FAILURE
        try:
            response.initial_future.result()
        except KeyboardInterrupt as e:
            response.cancel()
            raise RpcCancelledError("Interrupted while waiting for operation to start", cause=e) from e
        except Exception as e:
            return self._classify_error(e)
        return AttemptState.SUCCEEDED

    def _classify_error(self, error: BaseException) -> AttemptState:
        if translate_error(error).status_code in self.retryable_codes:
            return AttemptState.RETRYABLE_FAILURE
        return AttemptState.TERMINAL_FAILURE

    def should_retry(self, error: BaseException | None, response: OperationFuture | None) -> bool:
        return self.classify(error, response) is AttemptState.RETRYABLE_FAILURE


class OperationFutureCallable:
    """One logical start-or-resume call, invoked once per attempt.

    The first invocation records ``initial_call_time`` (wall clock, whole
    seconds) and starts the operation.  Later invocations look for an
    operation created by an earlier attempt and resume it, or start again
    if there is none.  Every invocation takes one administrative permit.
    """

    def __init__(
        self,
        operation_callable: OperationCallable,
        request: Any,
        *,
        destination_key: str,
        rate_limiter: AdministrativeRateLimiter,
        context_factory: Callable[[], InvocationContext],
        lister: OperationLister,
        start_time_extractor: StartTimeExtractor,
        clock: Clock = SYSTEM_CLOCK,
        retry_algorithm: OperationFutureRetryAlgorithm | None = None,
    ):
        self._operation_callable = operation_callable
        self._request = request
        self._destination_key = destination_key
        self._rate_limiter = rate_limiter
        self._context_factory = context_factory
        self._lister = lister
        self._start_time_extractor = start_time_extractor
        self._clock = clock
        self._algorithm = retry_algorithm or OperationFutureRetryAlgorithm()

        self.state = AttemptState.NOT_STARTED
        self.attempts = 0
        self.initial_call_time: datetime | None = None
        self.resumed_operation_name: str | None = None

    def _transition(self, target: AttemptState) -> None:
        validate_transition(self.state, target)
        self.state = target

    def __call__(self) -> OperationFuture:
        resuming = self.state is AttemptState.RETRYABLE_FAILURE
        # Validated before the permit is taken.
        self._transition(AttemptState.ATTEMPTED)
        self._rate_limiter.acquire(self._destination_key)
        self.attempts += 1

        if not resuming:
            self.initial_call_time = self._clock.now().replace(microsecond=0)
            return self._operation_callable.future_call(self._request, self._context_factory())

        assert self.initial_call_time is not None
        operation = most_recent_operation(self._lister, self._start_time_extractor, self.initial_call_time)
        if operation is not None:
            logger.info("operation_resumed", operation_name=operation.name, attempt=self.attempts)
            self.resumed_operation_name = operation.name
            return self._operation_callable.resume_future_call(operation.name)

        logger.info("operation_restarted", attempt=self.attempts)
        return self._operation_callable.future_call(self._request, self._context_factory())

    def should_retry(self, error: BaseException | None, response: OperationFuture | None) -> bool:
        """Retry predicate handed to the retry driver."""
        try:
            outcome = self._algorithm.classify(error, response)
        except RpcCancelledError:
            self._transition(AttemptState.TERMINAL_FAILURE)
            raise
        self._transition(outcome)
        if outcome is AttemptState.RETRYABLE_FAILURE:
            logger.info("operation_retry_scheduled", attempt=self.attempts, destination=self._destination_key)
        return outcome is AttemptState.RETRYABLE_FAILURE


# =============================================================================
# HANDLE + COORDINATOR
# =============================================================================


class OperationHandle:
    """Caller-facing handle; identical whether the operation was started or resumed."""

    def __init__(self, future: OperationFuture, *, resumed: bool = False):
        self._future = future
        self.resumed = resumed

    @property
    def name(self) -> str:
        return self._future.get_name()

    @property
    def initial_future(self):
        return self._future.initial_future

    def result(self, timeout: float | None = None) -> Any:
        """Wait for the operation's result (errors arrive as :class:`RpcError`)."""
        return get_result(self._future, timeout)

    def metadata(self) -> Any:
        return self._future.peek_metadata()

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        return self._future.cancel()

    def __repr__(self) -> str:
        return f"OperationHandle(resumed={self.resumed}, done={self.done()})"


class OperationResumptionCoordinator:
    """Drives :class:`OperationFutureCallable` through the retry driver."""

    def __init__(
        self,
        rate_limiter: AdministrativeRateLimiter,
        context_builder: CallContextBuilder,
        *,
        clock: Clock = SYSTEM_CLOCK,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._rate_limiter = rate_limiter
        self._context_builder = context_builder
        self._clock = clock
        self._sleep = sleep

    def start_or_resume(
        self,
        operation_callable: OperationCallable,
        request: Any,
        destination_key: str,
        lister: OperationLister,
        start_time_extractor: StartTimeExtractor = operation_start_time,
        retry_settings: RetrySettings = DEFAULT_OPERATION_RETRY_SETTINGS,
        *,
        resource: str | None = None,
        options: CallOptions | None = None,
    ) -> OperationHandle:
        """Start the operation, resuming an earlier attempt's operation on retry.

        Returns once the starting call (or the resume) has reached the
        server.

        Raises:
            RpcError: the single terminal error of the last attempt
            RpcCancelledError: interrupted while waiting for the start
            DbPlaneError: other library errors pass through unchanged, such
                as ClientClosedError when the client shuts down mid-retry
        """
        callable_ = OperationFutureCallable(
            operation_callable,
            request,
            destination_key=destination_key,
            rate_limiter=self._rate_limiter,
            context_factory=lambda: self._context_builder.build_context(options, resource),
            lister=lister,
            start_time_extractor=start_time_extractor,
            clock=self._clock,
        )

        try:
            future = run_with_retries(
                callable_,
                retry_settings,
                callable_.should_retry,
                clock=self._clock,
                sleep=self._sleep,
            )
        except DbPlaneError as e:
            raise e.with_context(resource=resource, attempt=callable_.attempts)
        except Exception as e:
            raise translate_error(e).with_context(resource=resource, attempt=callable_.attempts) from e

        # The predicate has already waited on the initial future.
        initial = future.initial_future
        if initial.done() and not initial.cancelled() and initial.exception() is not None:
            error = translate_error(initial.exception())
            raise error.with_context(resource=resource, attempt=callable_.attempts)
        if initial.cancelled():
            raise RpcCancelledError("Operation start was cancelled").with_context(resource=resource)

        return OperationHandle(future, resumed=callable_.resumed_operation_name is not None)


__all__ = [
    "DEFAULT_OPERATION_RETRY_SETTINGS",
    "OperationLister",
    "StartTimeExtractor",
    "compare_timestamps",
    "operation_start_time",
    "database_create_time",
    "progress_start_time",
    "backup_start_time",
    "restore_start_time",
    "operation_filter",
    "most_recent_operation",
    "InvalidTransitionError",
    "AttemptState",
    "VALID_TRANSITIONS",
    "validate_transition",
    "OperationFutureRetryAlgorithm",
    "OperationFutureCallable",
    "OperationHandle",
    "OperationResumptionCoordinator",
]
