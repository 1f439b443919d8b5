"""Retry driver with exponential backoff and a pluggable retry predicate.

The driver knows nothing about RPCs.  It calls a zero-argument callable,
hands the outcome ``(error, response)`` to a predicate, and either sleeps
and attempts again or surfaces the outcome.  Whether a failure is worth
another attempt is entirely the predicate's decision; the driver only
enforces the budget in :class:`RetrySettings`.

Example:
    >>> from dbplane.execution.retry import RetrySettings, run_with_retries
    >>>
    >>> settings = RetrySettings(initial_retry_delay=0.5, total_timeout=30.0)
    >>> result = run_with_retries(
    ...     fetch,
    ...     settings,
    ...     lambda error, response: error is not None and is_retryable(error),
    ... )
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from dbplane.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

RetryPredicate = Callable[[Exception | None, object | None], bool]


class Clock(Protocol):
    """Time source for retry budgets and operation timestamps."""

    def monotonic(self) -> float:
        """Seconds on a monotonic clock."""
        ...

    def now(self) -> datetime:
        """Current wall-clock time (timezone-aware UTC)."""
        ...


class SystemClock:
    """The real clock."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(UTC)


SYSTEM_CLOCK = SystemClock()


@dataclass(frozen=True)
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Attributes:
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    base_delay: float = 1.0
    max_delay: float = 32.0
    multiplier: float = 1.3
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (zero-based)."""
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay


@dataclass(frozen=True)
class RetrySettings:
    """Retry budget for one logical call.

    Attributes:
        initial_retry_delay: Delay before the first retry, seconds
        retry_delay_multiplier: Growth factor between retries
        max_retry_delay: Cap for a single delay, seconds
        total_timeout: Overall budget measured from the first attempt, seconds
        max_attempts: Maximum attempts including the first (0 = unbounded)
        jitter: Randomize delays
    """

    initial_retry_delay: float = 1.0
    retry_delay_multiplier: float = 1.3
    max_retry_delay: float = 32.0
    total_timeout: float = 600.0
    max_attempts: int = 0
    jitter: bool = True

    def backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            base_delay=self.initial_retry_delay,
            max_delay=self.max_retry_delay,
            multiplier=self.retry_delay_multiplier,
            jitter=self.jitter,
        )

    def allows(self, attempts_made: int, elapsed_after_delay: float) -> bool:
        """True if another attempt fits in the budget."""
        if self.max_attempts > 0 and attempts_made >= self.max_attempts:
            return False
        return elapsed_after_delay < self.total_timeout


def run_with_retries(
    func: Callable[[], T],
    settings: RetrySettings,
    predicate: RetryPredicate,
    clock: Clock = SYSTEM_CLOCK,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, Exception | None, float], None] | None = None,
) -> T:
    """Execute ``func`` until the predicate declines or the budget runs out.

    Args:
        func: Zero-argument callable; one invocation per attempt
        settings: Backoff and budget
        predicate: ``(error, response) -> bool``; exceptions it raises are
            terminal and propagate unchanged
        clock: Monotonic time source for the total timeout
        sleep: Sleep function (injectable for tests)
        on_retry: Callback called before each retry (attempt, error, delay)

    Returns:
        The response of the last attempt

    Raises:
        The error of the last attempt when the predicate or budget stops retrying
    """
    backoff = settings.backoff()
    started = clock.monotonic()
    attempts = 0

    while True:
        attempts += 1
        error: Exception | None = None
        response: T | None = None
        try:
            response = func()
        except Exception as e:
            error = e

        if predicate(error, response):
            delay = backoff.next_delay(attempts - 1)
            elapsed = clock.monotonic() - started
            if settings.allows(attempts, elapsed + delay):
                logger.debug(
                    "retry_scheduled",
                    attempt=attempts,
                    delay_seconds=round(delay, 3),
                    error=str(error) if error is not None else None,
                )
                if on_retry:
                    on_retry(attempts, error, delay)
                sleep(delay)
                continue
            logger.info("retry_budget_exhausted", attempts=attempts, elapsed_seconds=round(elapsed, 3))

        if error is not None:
            raise error
        return response  # type: ignore[return-value]


__all__ = [
    "Clock",
    "SystemClock",
    "SYSTEM_CLOCK",
    "ExponentialBackoff",
    "RetrySettings",
    "RetryPredicate",
    "run_with_retries",
]
