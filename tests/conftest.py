import asyncio
from typing import AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from ringwarden.logging import LoggingConfig
from ringwarden.models import Backend, BackendHealth
from ringwarden.registry import BackendRegistry

from tests.backends import BackendServer


@pytest.fixture(autouse=True)
def configure_log_level():
    config = LoggingConfig()
    config.update(log_level="info")
    yield
    config.update(log_level="info")


@pytest.fixture
def make_backend() -> Callable[..., Backend]:
    def create_backend(
        backend_id: str,
        host: str = "127.0.0.1",
        port: int = 8000,
        health: BackendHealth = BackendHealth.HEALTHY,
        **fields,
    ) -> Backend:
        return Backend(
            backend_id=backend_id,
            host=host,
            port=port,
            health=health,
            **fields,
        )

    return create_backend


@pytest.fixture
def registry() -> BackendRegistry:
    return BackendRegistry(virtual_nodes=64)


@pytest.fixture
async def backend_servers() -> AsyncGenerator[list[BackendServer], None]:
    servers: list[BackendServer] = []

    yield servers

    await asyncio.gather(*[server.stop() for server in servers])


def create_mock_stream_writer() -> MagicMock:
    mock_writer = MagicMock(spec=asyncio.StreamWriter)
    mock_writer.write = MagicMock()
    mock_writer.drain = AsyncMock()
    mock_writer.close = MagicMock()
    mock_writer.wait_closed = AsyncMock()
    mock_writer.is_closing = MagicMock(return_value=False)
    return mock_writer


@pytest.fixture
def mock_stdout_writer() -> MagicMock:
    return create_mock_stream_writer()


@pytest.fixture
def mock_stderr_writer() -> MagicMock:
    return create_mock_stream_writer()
