from __future__ import annotations

import asyncio

from ringwarden.errors import DeadlineExceeded, ForwardingFailure
from ringwarden.http import (
    HTTPRequest,
    HTTPResponse,
    encode_request,
    find_header,
    read_response,
    strip_hop_by_hop,
)
from ringwarden.models import Backend

FORWARDING_HEADERS = frozenset({
    "x-real-ip",
    "x-forwarded-proto",
    "x-forwarded-host",
    "x-request-deadline-ms",
    "expect",
})


def build_upstream_request(
    request: HTTPRequest,
    client_host: str,
    remaining_ms: int,
    scheme: str = "http",
) -> HTTPRequest:
    """
    Copy a client request for one upstream exchange: per-connection
    headers dropped, proxy headers added, and the connection closed after
    the response.
    """
    headers = [
        (name, value) for name, value in strip_hop_by_hop(request.headers)
        if name.lower() not in FORWARDING_HEADERS
        and name.lower() != "x-forwarded-for"
    ]

    forwarded_for = find_header(request.headers, "x-forwarded-for")
    host = find_header(request.headers, "host")

    headers.extend([
        (
            "X-Forwarded-For",
            f"{forwarded_for}, {client_host}" if forwarded_for else client_host,
        ),
        ("X-Real-IP", client_host),
        ("X-Forwarded-Proto", scheme),
    ])

    if host:
        headers.append(("X-Forwarded-Host", host))

    headers.extend([
        ("X-Request-Deadline-Ms", str(max(remaining_ms, 0))),
        ("Connection", "close"),
    ])

    return HTTPRequest(
        method=request.method,
        target=request.target,
        version="HTTP/1.1",
        headers=headers,
        body=request.body,
    )


class BackendForwarder:
    """
    Sends one request to one backend over a fresh connection.

    Two bounds apply. The connect timeout limits how long establishing the
    connection may take and surfaces as a ForwardingFailure, which may be
    retried. The request deadline limits the whole exchange and surfaces
    as DeadlineExceeded, which is never retried.
    """

    def __init__(
        self,
        connect_timeout: float = 5.0,
        scheme: str = "http",
    ) -> None:
        self._connect_timeout = connect_timeout
        self._scheme = scheme

    async def forward(
        self,
        backend: Backend,
        request: HTTPRequest,
        client_host: str,
        deadline: float,
        budget: float,
    ) -> HTTPResponse:
        loop = asyncio.get_running_loop()

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise DeadlineExceeded(budget, backend.backend_id)

        connect_timeout = min(self._connect_timeout, remaining)

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(backend.host, backend.port),
                timeout=connect_timeout,
            )

        except asyncio.TimeoutError as err:
            if connect_timeout < self._connect_timeout:
                raise DeadlineExceeded(budget, backend.backend_id) from err

            raise ForwardingFailure(
                backend.backend_id,
                backend.address,
                f"connect timed out after {connect_timeout:.2f}s",
                cause=err,
            ) from err

        except OSError as err:
            raise ForwardingFailure(
                backend.backend_id,
                backend.address,
                "connection failed",
                cause=err,
            ) from err

        try:
            upstream_request = build_upstream_request(
                request,
                client_host,
                int((deadline - loop.time()) * 1000),
                scheme=self._scheme,
            )

            return await asyncio.wait_for(
                self._exchange(reader, writer, upstream_request),
                timeout=max(deadline - loop.time(), 0),
            )

        except asyncio.TimeoutError as err:
            raise DeadlineExceeded(budget, backend.backend_id) from err

        except (
            OSError,
            ValueError,
            asyncio.IncompleteReadError,
        ) as err:
            raise ForwardingFailure(
                backend.backend_id,
                backend.address,
                "truncated or reset response",
                cause=err,
            ) from err

        finally:
            writer.close()

    async def _exchange(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        request: HTTPRequest,
    ) -> HTTPResponse:
        writer.write(encode_request(request))
        await writer.drain()

        response = await read_response(reader, method=request.method)
        response.headers = strip_hop_by_hop(response.headers)

        return response
