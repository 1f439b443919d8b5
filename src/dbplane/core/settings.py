"""Process-wide settings for dbplane.

Every knob the resilience layer exposes is read once from ``DBPLANE_*``
environment variables (or a ``.env`` file) and validated at startup.

Fields
──────
project_id                             : Destination project; keys the admin rate limiter
auto_throttle_administrative_requests  : Enable per-project admin throttling
administrative_requests_rate_limit     : Admin permits per second per project
watchdog_timeout_seconds               : Stream wait and idle timeout
watchdog_period_seconds                : Watchdog check interval
min_thread_count                       : Floor for each transport worker pool
termination_timeout_seconds            : Per-pool ceiling when awaiting shutdown
client_lib_token                       : Identification token sent in every call
api_client_header                      : Header carrying the identification token
resource_header_key                    : Header carrying the per-resource routing prefix
extra_headers                          : Caller-supplied headers merged into every call
log_level / log_format                 : Structlog configuration

Examples:
    >>> settings = RpcSettings(project_id="my-project", auto_throttle_administrative_requests=True)
    >>> settings.project_name
    'projects/my-project'

Tags:
    settings, configuration, pydantic, environment, dbplane
"""

from __future__ import annotations

from urllib.parse import unquote

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WATCHDOG_TIMEOUT_SECONDS = 30 * 60
DEFAULT_WATCHDOG_PERIOD_SECONDS = 10
DEFAULT_MIN_THREAD_COUNT = 16  # 4 stubs * 4 channels
DEFAULT_TERMINATION_TIMEOUT_SECONDS = 10.0
ADMINISTRATIVE_REQUESTS_RATE_LIMIT = 1.0


class RpcSettings(BaseSettings):
    """dbplane configuration; all fields can be set via ``DBPLANE_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="DBPLANE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Destination ──────────────────────────────────────────────
    project_id: str = Field(default="")

    # ── Administrative throttling ────────────────────────────────
    auto_throttle_administrative_requests: bool = Field(default=False)
    administrative_requests_rate_limit: float = Field(default=ADMINISTRATIVE_REQUESTS_RATE_LIMIT)

    # ── Streams / watchdog ───────────────────────────────────────
    watchdog_timeout_seconds: int = Field(default=DEFAULT_WATCHDOG_TIMEOUT_SECONDS)
    watchdog_period_seconds: int = Field(default=DEFAULT_WATCHDOG_PERIOD_SECONDS)

    # ── Executors ────────────────────────────────────────────────
    min_thread_count: int = Field(default=DEFAULT_MIN_THREAD_COUNT)
    termination_timeout_seconds: float = Field(default=DEFAULT_TERMINATION_TIMEOUT_SECONDS)

    # ── Headers ──────────────────────────────────────────────────
    client_lib_token: str = Field(default="dbplane")
    api_client_header: str = Field(default="x-goog-api-client")
    resource_header_key: str = Field(default="google-cloud-resource-prefix")
    extra_headers: dict[str, str] = Field(default_factory=dict)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator(
        "administrative_requests_rate_limit",
        "watchdog_timeout_seconds",
        "watchdog_period_seconds",
        "min_thread_count",
        "termination_timeout_seconds",
    )
    @classmethod
    def _must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def project_name(self) -> str:
        """``projects/<id>`` with percent-escapes decoded (organization projects)."""
        return unquote(f"projects/{self.project_id}")


__all__ = [
    "RpcSettings",
    "ADMINISTRATIVE_REQUESTS_RATE_LIMIT",
    "DEFAULT_MIN_THREAD_COUNT",
    "DEFAULT_TERMINATION_TIMEOUT_SECONDS",
    "DEFAULT_WATCHDOG_PERIOD_SECONDS",
    "DEFAULT_WATCHDOG_TIMEOUT_SECONDS",
]
