import asyncio

import pytest

from ringwarden.errors import DeadlineExceeded, ForwardingFailure
from ringwarden.http import HTTPRequest
from ringwarden.proxy import BackendForwarder, build_upstream_request

from tests.backends import BackendServer, unused_port


def client_request(**overrides) -> HTTPRequest:
    fields = {
        "method": "GET",
        "target": "/wp-admin/?page=1",
        "headers": [
            ("Host", "blog.example.com"),
            ("Connection", "keep-alive"),
            ("Keep-Alive", "timeout=5"),
            ("Accept", "text/html"),
        ],
    }
    fields.update(overrides)
    return HTTPRequest(**fields)


class TestUpstreamRequest:
    def test_forwarding_headers(self):
        upstream = build_upstream_request(client_request(), "198.51.100.7", 1500)

        assert upstream.header("X-Forwarded-For") == "198.51.100.7"
        assert upstream.header("X-Real-IP") == "198.51.100.7"
        assert upstream.header("X-Forwarded-Proto") == "http"
        assert upstream.header("X-Forwarded-Host") == "blog.example.com"
        assert upstream.header("X-Request-Deadline-Ms") == "1500"
        assert upstream.header("Host") == "blog.example.com"
        assert upstream.header("Accept") == "text/html"

    def test_connection_closed_upstream(self):
        upstream = build_upstream_request(client_request(), "198.51.100.7", 1500)

        assert upstream.header("Connection") == "close"
        assert upstream.header("Keep-Alive") is None

    def test_forwarded_for_is_appended(self):
        request = client_request(
            headers=[
                ("Host", "blog.example.com"),
                ("X-Forwarded-For", "203.0.113.1"),
                ("X-Real-IP", "203.0.113.1"),
            ]
        )

        upstream = build_upstream_request(request, "198.51.100.7", 10)

        assert upstream.header("X-Forwarded-For") == "203.0.113.1, 198.51.100.7"
        assert upstream.header("X-Real-IP") == "198.51.100.7"
        assert [
            name for name, _ in upstream.headers if name.lower() == "x-real-ip"
        ] == ["X-Real-IP"]

    def test_deadline_never_negative(self):
        upstream = build_upstream_request(client_request(), "198.51.100.7", -20)
        assert upstream.header("X-Request-Deadline-Ms") == "0"

    def test_body_and_method_pass_through(self):
        upstream = build_upstream_request(
            client_request(method="POST", body=b"comment=hi"),
            "198.51.100.7",
            10,
        )

        assert upstream.method == "POST"
        assert upstream.target == "/wp-admin/?page=1"
        assert upstream.body == b"comment=hi"


class TestForward:
    @pytest.mark.asyncio
    async def test_forward_returns_backend_response(self, make_backend, backend_servers):
        server = BackendServer("web-1")
        backend_servers.append(server)
        port = await server.start()

        forwarder = BackendForwarder(connect_timeout=1.0)
        loop = asyncio.get_running_loop()

        response = await forwarder.forward(
            make_backend("web-1", port=port),
            client_request(method="POST", body=b"+body"),
            "198.51.100.7",
            deadline=loop.time() + 5.0,
            budget=5.0,
        )

        assert response.status == 200
        assert response.body == b"web-1+body"
        assert response.header("x-backend") == "web-1"

        received = server.requests[0]
        assert received.header("x-real-ip") == "198.51.100.7"
        assert 0 < int(received.header("x-request-deadline-ms")) <= 5000

    @pytest.mark.asyncio
    async def test_refused_connection(self, make_backend):
        forwarder = BackendForwarder(connect_timeout=1.0)
        loop = asyncio.get_running_loop()

        with pytest.raises(ForwardingFailure) as raised:
            await forwarder.forward(
                make_backend("web-1", port=unused_port()),
                client_request(),
                "198.51.100.7",
                deadline=loop.time() + 5.0,
                budget=5.0,
            )

        assert raised.value.backend_id == "web-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_mode", ["reset", "truncate"])
    async def test_broken_response(self, make_backend, backend_servers, fail_mode):
        server = BackendServer("web-1")
        server.fail_mode = fail_mode
        backend_servers.append(server)
        port = await server.start()

        forwarder = BackendForwarder(connect_timeout=1.0)
        loop = asyncio.get_running_loop()

        with pytest.raises(ForwardingFailure):
            await forwarder.forward(
                make_backend("web-1", port=port),
                client_request(),
                "198.51.100.7",
                deadline=loop.time() + 5.0,
                budget=5.0,
            )

    @pytest.mark.asyncio
    async def test_slow_backend_exceeds_deadline(self, make_backend, backend_servers):
        server = BackendServer("web-1", delay=2.0)
        backend_servers.append(server)
        port = await server.start()

        forwarder = BackendForwarder(connect_timeout=1.0)
        loop = asyncio.get_running_loop()

        with pytest.raises(DeadlineExceeded):
            await forwarder.forward(
                make_backend("web-1", port=port),
                client_request(),
                "198.51.100.7",
                deadline=loop.time() + 0.1,
                budget=0.1,
            )

    @pytest.mark.asyncio
    async def test_expired_deadline(self, make_backend):
        forwarder = BackendForwarder()
        loop = asyncio.get_running_loop()

        with pytest.raises(DeadlineExceeded):
            await forwarder.forward(
                make_backend("web-1"),
                client_request(),
                "198.51.100.7",
                deadline=loop.time() - 1.0,
                budget=1.0,
            )
