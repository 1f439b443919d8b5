"""dbplane execution — throttling and retry primitives.

ARCHITECTURE
────────────
::

    rate_limit.py
      ├── TokenBucketLimiter        ─ steady rate + burst, blocking acquire
      ├── RateLimiterRegistry       ─ destination → limiter (process-scoped)
      └── AdministrativeRateLimiter ─ optional per-destination admin throttle

    retry.py
      ├── ExponentialBackoff        ─ delay schedule
      ├── RetrySettings             ─ backoff + total budget
      ├── Clock / SystemClock       ─ injectable time source
      └── run_with_retries          ─ predicate-driven retry loop

Neither module knows about RPCs; ``dbplane.rpc`` configures and drives them.
"""

from dbplane.execution.rate_limit import (
    AdministrativeRateLimiter,
    RateLimiterRegistry,
    TokenBucketLimiter,
)
from dbplane.execution.retry import (
    SYSTEM_CLOCK,
    Clock,
    ExponentialBackoff,
    RetrySettings,
    SystemClock,
    run_with_retries,
)

__all__ = [
    "AdministrativeRateLimiter",
    "RateLimiterRegistry",
    "TokenBucketLimiter",
    "SYSTEM_CLOCK",
    "Clock",
    "ExponentialBackoff",
    "RetrySettings",
    "SystemClock",
    "run_with_retries",
]
