"""Rate Limiting — per-destination throttling of administrative calls.

Manifesto:
The control plane of the database service is shared by every client in a
project.  Creating, updating and deleting instances, databases and backups
in a tight loop trips server-side quotas for everyone.  Throttling happens
in-process, keyed by destination, so that all client instances addressing
the same project draw from the same bucket.

ARCHITECTURE
────────────
::

    TokenBucketLimiter          ─ steady rate + burst capacity, blocking acquire
    RateLimiterRegistry         ─ destination key → limiter, insert-if-absent,
                                  never evicts
    AdministrativeRateLimiter   ─ enabled flag + registry + default rate;
                                  acquire(key) is a no-op when disabled

    All limiters are thread-safe (internal Lock).

Data-plane calls (reads, queries, commits) never pass through this module.

Example::

    registry = RateLimiterRegistry.process_default()
    admin = AdministrativeRateLimiter(registry, enabled=True)
    admin.acquire("projects/my-project")   # blocks until a permit is free

Tags:
    dbplane, execution, rate-limit, throttle, token-bucket

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from dbplane.core.logging import get_logger
from dbplane.core.settings import ADMINISTRATIVE_REQUESTS_RATE_LIMIT

logger = get_logger(__name__)


@dataclass
class TokenBucketLimiter:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate up to capacity.  The bucket starts
    full, so the first ``capacity`` acquisitions are immediate.

    Attributes:
        rate: Tokens added per second
        capacity: Maximum tokens (burst size)
    """

    rate: float  # tokens per second
    capacity: float  # max tokens
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    _tokens: float = field(default=0.0, init=False)
    _last_update: float = field(default=0.0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self):
        if self.rate <= 0:
            raise ValueError(f"rate must be positive, got {self.rate}")
        self._tokens = self.capacity
        self._last_update = self.clock()

    def _refill(self) -> None:
        """Add tokens based on elapsed time."""
        now = self.clock()
        elapsed = max(0.0, now - self._last_update)
        self._tokens = min(
            self.capacity,
            self._tokens + (elapsed * self.rate),
        )
        self._last_update = now

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens if available right now."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def acquire(self, tokens: int = 1) -> float:
        """Block until tokens are available, then take them.

        Never fails.  Returns the total seconds spent waiting.
        """
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                wait_time = (tokens - self._tokens) / self.rate

            # Release lock while sleeping
            self.sleep(wait_time)
            waited += wait_time

    def get_wait_time(self, tokens: int = 1) -> float:
        """Get seconds until tokens available."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                return 0.0
            return (tokens - self._tokens) / self.rate

    @property
    def available_tokens(self) -> float:
        """Get current available tokens."""
        with self._lock:
            self._refill()
            return self._tokens


class RateLimiterRegistry:
    """Destination key → limiter map shared by every client in the process.

    Entries are created lazily under a lock (insert-if-absent) and are never
    removed, so concurrent first lookups for one key converge on a single
    limiter.
    """

    _process_default: RateLimiterRegistry | None = None
    _process_default_lock = threading.Lock()

    def __init__(self) -> None:
        self._limiters: dict[str, TokenBucketLimiter] = {}
        self._lock = threading.Lock()

    @classmethod
    def process_default(cls) -> RateLimiterRegistry:
        """The registry instance shared by clients that are not given one."""
        with cls._process_default_lock:
            if cls._process_default is None:
                cls._process_default = cls()
            return cls._process_default

    def get_or_create(
        self,
        key: str,
        factory: Callable[[], TokenBucketLimiter],
    ) -> TokenBucketLimiter:
        """Return the limiter for ``key``, installing ``factory()`` if absent."""
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                limiter = factory()
                self._limiters[key] = limiter
                logger.debug("rate_limiter_installed", destination=key, rate=limiter.rate)
            return limiter

    def get(self, key: str) -> TokenBucketLimiter | None:
        with self._lock:
            return self._limiters.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._limiters

    def __len__(self) -> int:
        with self._lock:
            return len(self._limiters)


class AdministrativeRateLimiter:
    """Throttles administrative calls per destination.

    The steady rate defaults to one request per second; the bucket holds a
    single permit so there is no burst beyond one call.
    """

    def __init__(
        self,
        registry: RateLimiterRegistry,
        *,
        enabled: bool,
        rate: float = ADMINISTRATIVE_REQUESTS_RATE_LIMIT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.enabled = enabled
        self.rate = rate
        self._clock = clock
        self._sleep = sleep

    def _new_limiter(self) -> TokenBucketLimiter:
        return TokenBucketLimiter(rate=self.rate, capacity=1.0, clock=self._clock, sleep=self._sleep)

    def register(self, destination_key: str) -> None:
        """Install the destination's limiter eagerly (first caller wins)."""
        if self.enabled:
            self.registry.get_or_create(destination_key, self._new_limiter)

    def acquire(self, destination_key: str) -> None:
        """Block until the destination admits another administrative call."""
        if not self.enabled:
            return
        limiter = self.registry.get_or_create(destination_key, self._new_limiter)
        waited = limiter.acquire()
        if waited > 0:
            logger.debug("administrative_request_throttled", destination=destination_key, waited_seconds=round(waited, 3))


__all__ = [
    "TokenBucketLimiter",
    "RateLimiterRegistry",
    "AdministrativeRateLimiter",
]
