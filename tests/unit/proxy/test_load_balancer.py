"""
Tests for LoadBalancerFront.

Covers:
- Routing and affinity through handle()
- Retry exactly once for idempotent methods, never for the rest
- Fast probes on forwarding failure
- 502, 503 and 504 mapping with JSON error bodies
- Deadline expiry without retry
- The status endpoint
- Keep-alive, malformed requests and Expect: 100-continue over sockets
"""

import asyncio

import orjson
import pytest

from ringwarden.http import HTTPRequest, encode_request, read_response
from ringwarden.models import Backend
from ringwarden.proxy import BackendForwarder, LoadBalancerFront
from ringwarden.registry import BackendRegistry
from ringwarden.routing import AffinityRouter, SessionKeyExtractor

from tests.backends import BackendServer, send_request, unused_port

CLIENT = "198.51.100.7"
SESSION_KEY = "198.51.100"


class FrontHarness:
    def __init__(self, request_timeout: float = 5.0):
        self.registry = BackendRegistry(virtual_nodes=64)
        self.router = AffinityRouter(self.registry)
        self.fast_probes: list[str] = []
        self.servers: dict[str, BackendServer] = {}
        self.front = LoadBalancerFront(
            self.registry,
            self.router,
            forwarder=BackendForwarder(connect_timeout=1.0),
            session_keys=SessionKeyExtractor("ip_hash"),
            host="127.0.0.1",
            port=0,
            request_timeout=request_timeout,
            fast_probe=self.fast_probes.append,
        )

    async def add_servers(self, count: int, **options) -> None:
        for index in range(1, count + 1):
            server = BackendServer(f"web-{index}", **options)
            port = await server.start()
            self.servers[server.name] = server
            await self.registry.register(
                Backend(backend_id=server.name, host="127.0.0.1", port=port)
            )

    async def owner_and_successor(self) -> tuple[BackendServer, BackendServer]:
        owner, successor = await self.router.candidates(SESSION_KEY, count=2)
        return self.servers[owner.backend_id], self.servers[successor.backend_id]

    async def close(self) -> None:
        await self.front.stop()
        await asyncio.gather(*[server.stop() for server in self.servers.values()])


@pytest.fixture
async def harness():
    harness = FrontHarness()
    yield harness
    await harness.close()


def get(target: str = "/", method: str = "GET", body: bytes = b"") -> HTTPRequest:
    return HTTPRequest(
        method=method,
        target=target,
        headers=[("Host", "blog.example.com")],
        body=body,
    )


class TestRouting:
    @pytest.mark.asyncio
    async def test_requests_stick_to_owner(self, harness):
        await harness.add_servers(3)
        owner, _ = await harness.owner_and_successor()

        for _ in range(5):
            response = await harness.front.handle(get(), CLIENT)
            assert response.header("x-backend") == owner.name

        # Same /24, same backend.
        response = await harness.front.handle(get(), "198.51.100.200")
        assert response.header("x-backend") == owner.name

        assert len(owner.requests) == 6

    @pytest.mark.asyncio
    async def test_backend_status_passed_through(self, harness):
        await harness.add_servers(1, status=404)

        response = await harness.front.handle(get(), CLIENT)

        assert response.status == 404
        assert response.body == b"web-1"


class TestRetry:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "TRACE", "PUT", "DELETE"])
    async def test_idempotent_retried_once_on_next_backend(self, harness, method):
        await harness.add_servers(3)
        owner, successor = await harness.owner_and_successor()
        owner.fail_mode = "reset"

        response = await harness.front.handle(get(method=method), CLIENT)

        assert response.status == 200
        assert response.header("x-backend") == successor.name
        assert len(owner.requests) == 1
        assert len(successor.requests) == 1
        assert harness.fast_probes == [owner.name]

    @pytest.mark.asyncio
    async def test_retry_happens_only_once(self, harness):
        await harness.add_servers(3)
        owner, successor = await harness.owner_and_successor()
        owner.fail_mode = "reset"
        successor.fail_mode = "truncate"

        response = await harness.front.handle(get(), CLIENT)

        assert response.status == 502
        total = sum(len(server.requests) for server in harness.servers.values())
        assert total == 2
        assert harness.fast_probes == [owner.name, successor.name]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["POST", "PATCH"])
    async def test_non_idempotent_never_retried(self, harness, method):
        await harness.add_servers(3)
        owner, successor = await harness.owner_and_successor()
        owner.fail_mode = "reset"

        response = await harness.front.handle(get(method=method, body=b"x=1"), CLIENT)

        assert response.status == 502
        assert orjson.loads(response.body)["error"] == "ForwardingFailure"
        assert len(owner.requests) == 1
        assert successor.requests == []
        assert harness.fast_probes == [owner.name]

    @pytest.mark.asyncio
    async def test_refused_backend_retried(self, harness):
        await harness.add_servers(1)
        await harness.registry.register(
            Backend(backend_id="dead", host="127.0.0.1", port=unused_port())
        )

        for index in range(50):
            client = f"10.{index}.0.1"
            response = await harness.front.handle(get(), client)
            assert response.status == 200
            assert response.header("x-backend") == "web-1"

        assert "dead" in harness.fast_probes

    @pytest.mark.asyncio
    async def test_single_backend_failure_is_502(self, harness):
        await harness.add_servers(1)
        harness.servers["web-1"].fail_mode = "reset"

        response = await harness.front.handle(get(), CLIENT)

        assert response.status == 502
        assert len(harness.servers["web-1"].requests) == 1


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_no_backend_is_503(self, harness):
        response = await harness.front.handle(get(), CLIENT)

        assert response.status == 503
        assert response.header("content-type") == "application/json"
        body = orjson.loads(response.body)
        assert body["status"] == 503
        assert body["error"] == "NoAvailableBackend"

    @pytest.mark.asyncio
    async def test_deadline_is_504_without_retry(self):
        harness = FrontHarness(request_timeout=0.2)
        try:
            await harness.add_servers(3, delay=1.0)
            owner, _ = await harness.owner_and_successor()

            response = await harness.front.handle(get(), CLIENT)

            assert response.status == 504
            assert orjson.loads(response.body)["error"] == "DeadlineExceeded"
            assert len(owner.requests) == 1
            total = sum(len(server.requests) for server in harness.servers.values())
            assert total == 1
            assert harness.fast_probes == []

        finally:
            await harness.close()


class TestStatusEndpoint:
    @pytest.mark.asyncio
    async def test_status_lists_backends(self, harness):
        await harness.add_servers(2)

        response = await harness.front.handle(get("/__ringwarden/status"), CLIENT)

        assert response.status == 200
        status = orjson.loads(response.body)
        assert sorted(backend["backend_id"] for backend in status["backends"]) == [
            "web-1",
            "web-2",
        ]
        assert all(server.requests == [] for server in harness.servers.values())


class TestConnections:
    @pytest.mark.asyncio
    async def test_keep_alive_serves_several_requests(self, harness):
        await harness.add_servers(2)
        port = await harness.front.start()

        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        try:
            for _ in range(3):
                writer.write(encode_request(get()))
                await writer.drain()

                response = await read_response(reader)
                assert response.status == 200
                assert response.header("connection") == "keep-alive"

        finally:
            writer.close()

    @pytest.mark.asyncio
    async def test_connection_close_honoured(self, harness):
        await harness.add_servers(1)
        port = await harness.front.start()

        response = await send_request(port)

        assert response.status == 200
        assert response.header("connection") == "close"
        assert response.body == b"web-1"

    @pytest.mark.asyncio
    async def test_malformed_request_is_400(self, harness):
        port = await harness.front.start()

        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        try:
            writer.write(b"NOT-HTTP\r\n\r\n")
            await writer.drain()

            response = await read_response(reader)

        finally:
            writer.close()

        assert response.status == 400
        assert orjson.loads(response.body)["error"] == "MalformedRequest"

    @pytest.mark.asyncio
    async def test_expect_continue(self, harness):
        await harness.add_servers(1)
        port = await harness.front.start()

        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        try:
            writer.write(
                b"POST /upload HTTP/1.1\r\n"
                b"Host: blog.example.com\r\n"
                b"Content-Length: 4\r\n"
                b"Expect: 100-continue\r\n"
                b"Connection: close\r\n"
                b"\r\n"
            )
            await writer.drain()

            interim = await reader.readline()
            assert interim.startswith(b"HTTP/1.1 100")
            await reader.readline()

            writer.write(b"data")
            await writer.drain()

            response = await read_response(reader)

        finally:
            writer.close()

        assert response.status == 200
        assert response.body == b"web-1data"
        assert harness.servers["web-1"].requests[0].header("expect") is None

    @pytest.mark.asyncio
    async def test_start_reports_bound_port(self, harness):
        port = await harness.front.start()

        assert port > 0
        assert harness.front.port == port
        assert harness.front.running
