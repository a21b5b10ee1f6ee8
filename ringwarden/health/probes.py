"""
Health probes for backends.

A probe is an HTTP GET of the configured health check path. Any status
from 200 to 399 counts as success. Timeouts, connection errors and other
statuses are failures and only ever feed the hysteresis counters.

Each probe can be configured with:
- Timeout: How long to wait for a response
- Period: How often to check
- Failure threshold: Consecutive failures before Unhealthy
- Success threshold: Consecutive successes before Healthy
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from ringwarden.errors import ProbeFailure
from ringwarden.http import HTTPRequest, encode_request, read_response
from ringwarden.models import Backend


class ProbeResult(Enum):
    """Result of a health probe."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(slots=True)
class ProbeResponse:
    """Response from a health probe."""

    backend_id: str
    result: ProbeResult
    message: str = ""
    latency_ms: float = 0.0
    timestamp: float = field(default_factory=time.monotonic)
    failure: ProbeFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.result == ProbeResult.SUCCESS


@dataclass(slots=True)
class ProbeConfig:
    """Configuration for backend health probes."""

    timeout_seconds: float = 5.0
    period_seconds: float = 10.0
    failure_threshold: int = 3
    success_threshold: int = 2
    path: str = "/"


class ProbeCheck(Protocol):
    """Protocol for probe check functions."""

    async def __call__(self, backend: Backend) -> tuple[bool, str]: ...


class HTTPHealthCheck:
    """
    Issues ``GET <path>`` against a backend over a fresh connection.

    Example usage:
        check = HTTPHealthCheck(path="/healthz")
        healthy, message = await check(backend)
    """

    def __init__(self, path: str = "/") -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    async def __call__(self, backend: Backend) -> tuple[bool, str]:
        reader, writer = await asyncio.open_connection(
            backend.host,
            backend.port,
        )

        try:
            writer.write(
                encode_request(
                    HTTPRequest(
                        method="GET",
                        target=self._path,
                        headers=[
                            ("Host", f"{backend.host}:{backend.port}"),
                            ("User-Agent", "ringwarden-health-check"),
                            ("Connection", "close"),
                        ],
                    )
                )
            )
            await writer.drain()

            response = await read_response(reader, method="GET")

        finally:
            writer.close()

        return (
            200 <= response.status < 400,
            f"HTTP {response.status}",
        )
