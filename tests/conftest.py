"""
Shared pytest fixtures for dbplane tests.

This module provides:
- A manually advanced clock
- Settings isolated from ``DBPLANE_*`` variables in the environment
- A fresh rate-limiter registry per test (never the process default)
- A DatabaseRpc wired to the in-memory fake transport
"""

from collections.abc import Generator
from pathlib import Path

import pytest

from dbplane.core.settings import RpcSettings
from dbplane.execution.rate_limit import RateLimiterRegistry
from dbplane.execution.retry import RetrySettings
from dbplane.rpc.client import DatabaseRpc
from tests._support.fakes import FakeClock, FakeTransport


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if test_path.parts:
            item.add_marker(getattr(pytest.mark, test_path.parts[0]))


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep host ``DBPLANE_*`` variables and ``.env`` files out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("DBPLANE_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> RpcSettings:
    return RpcSettings(project_id="test-project")


@pytest.fixture
def registry() -> RateLimiterRegistry:
    return RateLimiterRegistry()


@pytest.fixture
def fast_retry() -> RetrySettings:
    """Deterministic retry budget (no jitter)."""
    return RetrySettings(
        initial_retry_delay=0.5,
        retry_delay_multiplier=2.0,
        max_retry_delay=4.0,
        total_timeout=60.0,
        jitter=False,
    )


@pytest.fixture
def rpc(settings, registry, clock, fast_retry) -> Generator[DatabaseRpc, None, None]:
    client = DatabaseRpc(
        settings,
        FakeTransport,
        rate_limiter_registry=registry,
        clock=clock,
        sleep=clock.sleep,
        operation_retry_settings=fast_retry,
    )
    yield client
    client.shutdown()
