"""Per-call invocation context assembly.

Each RPC attempt gets a fresh :class:`InvocationContext`:

- channel affinity from ``CallOptions.channel_hint`` (unset without options)
- process headers (identification + caller extras) plus a routing header
  derived from the addressed resource
- call credentials from the configured provider, when it returns any
- stream wait and idle timeouts from settings
- a deadline computed from "now" when a timeout applies

Construction never fails.  A wrong resource name produces a context the
server rejects, which surfaces later as an ordinary transport error.
"""

from __future__ import annotations

import platform
import re
from typing import Any, Protocol

from dbplane import __version__
from dbplane.core.settings import RpcSettings
from dbplane.execution.retry import SYSTEM_CLOCK, Clock
from dbplane.rpc.models import CallOptions, InvocationContext

_DATABASE_PATH = re.compile(r"^(projects/[^/]+/instances/[^/]+/databases/[^/]+)")


class CallCredentialsProvider(Protocol):
    def get_call_credentials(self) -> Any | None:
        """Credentials for the next call, or None to use the channel's own."""
        ...


def identification_header_value(client_lib_token: str) -> str:
    return f"{client_lib_token}/{__version__} gl-python/{platform.python_version()}"


class HeaderProvider:
    """Builds the header set attached to every call."""

    def __init__(self, settings: RpcSettings):
        self._resource_header_key = settings.resource_header_key
        headers = dict(settings.extra_headers)
        ident = identification_header_value(settings.client_lib_token)
        existing = headers.get(settings.api_client_header)
        headers[settings.api_client_header] = f"{existing} {ident}" if existing else ident
        self._process_headers = headers

    @property
    def process_headers(self) -> dict[str, str]:
        return dict(self._process_headers)

    @staticmethod
    def resource_header_value(resource: str | None, project_name: str) -> str:
        """Database path contained in ``resource``, else the project name."""
        if resource:
            match = _DATABASE_PATH.match(resource)
            if match:
                return match.group(1)
        return project_name

    def new_extra_headers(self, resource: str | None, project_name: str) -> dict[str, str]:
        headers = dict(self._process_headers)
        headers[self._resource_header_key] = self.resource_header_value(resource, project_name)
        return headers


class CallContextBuilder:
    """Produces one :class:`InvocationContext` per RPC attempt."""

    def __init__(
        self,
        settings: RpcSettings,
        header_provider: HeaderProvider | None = None,
        credentials_provider: CallCredentialsProvider | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self._project_name = settings.project_name
        self._headers = header_provider or HeaderProvider(settings)
        self._credentials_provider = credentials_provider
        self._wait_timeout = float(settings.watchdog_timeout_seconds)
        self._idle_timeout = float(settings.watchdog_timeout_seconds)
        self._clock = clock

    def build_context(
        self,
        options: CallOptions | None,
        resource: str | None,
        *,
        timeout: float | None = None,
    ) -> InvocationContext:
        """Assemble the context for a single attempt against ``resource``.

        Args:
            options: Caller options; ``None`` leaves channel affinity unset
            resource: Resource the call addresses (drives the routing header)
            timeout: Default per-attempt timeout, overridden by ``options.timeout``
        """
        channel_affinity = options.channel_hint if options is not None else None

        credentials = None
        if self._credentials_provider is not None:
            credentials = self._credentials_provider.get_call_credentials()

        if options is not None and options.timeout is not None:
            timeout = options.timeout
        deadline = self._clock.monotonic() + timeout if timeout is not None else None

        return InvocationContext(
            resource=resource,
            extra_headers=self._headers.new_extra_headers(resource, self._project_name),
            stream_wait_timeout=self._wait_timeout,
            stream_idle_timeout=self._idle_timeout,
            channel_affinity=channel_affinity,
            call_credentials=credentials,
            deadline=deadline,
        )


__all__ = [
    "CallCredentialsProvider",
    "CallContextBuilder",
    "HeaderProvider",
    "identification_header_value",
]
