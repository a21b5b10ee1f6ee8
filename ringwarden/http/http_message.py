from __future__ import annotations

import asyncio
from typing import Iterable

import msgspec

NEW_LINE = "\r\n"
MAX_HEADERS = 128

IDEMPOTENT_METHODS = frozenset({
    "GET",
    "HEAD",
    "OPTIONS",
    "TRACE",
    "PUT",
    "DELETE",
})

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}


class HTTPParseError(ValueError):
    """Raised when bytes read from a stream are not valid HTTP/1.x."""


def find_header(headers: Iterable[tuple[str, str]], name: str) -> str | None:
    name = name.lower()
    for header_name, value in headers:
        if header_name.lower() == name:
            return value

    return None


def connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    tokens: set[str] = set()
    for header_name, value in headers:
        if header_name.lower() == "connection":
            tokens.update(
                token.strip().lower() for token in value.split(",") if token.strip()
            )

    return tokens


def strip_hop_by_hop(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """
    Remove per-connection headers, including any named by Connection.
    """
    headers = list(headers)
    excluded = HOP_BY_HOP_HEADERS | connection_tokens(headers)

    return [
        (name, value) for name, value in headers
        if name.lower() not in excluded
    ]


class HTTPRequest(msgspec.Struct, kw_only=True):
    method: str
    target: str
    version: str = "HTTP/1.1"
    headers: list[tuple[str, str]] = msgspec.field(default_factory=list)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        return find_header(self.headers, name)

    @property
    def path(self) -> str:
        return self.target.split("?", 1)[0]

    @property
    def idempotent(self) -> bool:
        return self.method in IDEMPOTENT_METHODS

    @property
    def keep_alive(self) -> bool:
        tokens = connection_tokens(self.headers)
        if "close" in tokens:
            return False

        if self.version == "HTTP/1.0":
            return "keep-alive" in tokens

        return True

    @property
    def expects_continue(self) -> bool:
        expect = self.header("expect")
        return expect is not None and expect.strip().lower() == "100-continue"


class HTTPResponse(msgspec.Struct, kw_only=True):
    status: int
    reason: str = ""
    version: str = "HTTP/1.1"
    headers: list[tuple[str, str]] = msgspec.field(default_factory=list)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        return find_header(self.headers, name)


async def read_headers(reader: asyncio.StreamReader) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []

    while True:
        line = await reader.readline()
        if not line:
            raise HTTPParseError("Connection closed while reading headers")

        if line in (b"\r\n", b"\n"):
            return headers

        if len(headers) >= MAX_HEADERS:
            raise HTTPParseError(f"More than {MAX_HEADERS} headers")

        name, separator, value = line.decode("latin-1").partition(":")
        name = name.strip()
        if not separator or not name or " " in name:
            raise HTTPParseError(f"Invalid header line {line[:64]!r}")

        headers.append((name, value.strip()))


async def read_chunked(reader: asyncio.StreamReader) -> bytes:
    body = bytearray()

    while True:
        size_line = await reader.readline()
        if not size_line:
            raise HTTPParseError("Connection closed inside chunked body")

        try:
            chunk_size = int(size_line.split(b";", 1)[0].strip(), 16)

        except ValueError:
            raise HTTPParseError(f"Invalid chunk size {size_line[:32]!r}") from None

        if chunk_size == 0:
            # Discard trailers up to the terminating blank line.
            await read_headers(reader)
            return bytes(body)

        chunk = await reader.readexactly(chunk_size + 2)
        body.extend(chunk[:-2])


async def read_body(
    reader: asyncio.StreamReader,
    headers: list[tuple[str, str]],
    until_eof: bool = False,
) -> bytes:
    transfer_encoding = find_header(headers, "transfer-encoding")
    if transfer_encoding and "chunked" in transfer_encoding.lower():
        return await read_chunked(reader)

    content_length = find_header(headers, "content-length")
    if content_length is not None:
        try:
            length = int(content_length)

        except ValueError:
            raise HTTPParseError(f"Invalid Content-Length {content_length!r}") from None

        if length < 0:
            raise HTTPParseError(f"Invalid Content-Length {content_length!r}")

        return await reader.readexactly(length) if length else b""

    if until_eof:
        return await reader.read()

    return b""


async def read_request_head(reader: asyncio.StreamReader) -> HTTPRequest | None:
    """
    Read a request line and headers. Returns None when the client closed
    the connection cleanly between requests.
    """
    request_line = await reader.readline()
    while request_line in (b"\r\n", b"\n"):
        request_line = await reader.readline()

    if not request_line:
        return None

    parts = request_line.decode("latin-1").split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/1."):
        raise HTTPParseError(f"Invalid request line {request_line[:64]!r}")

    method, target, version = parts
    headers = await read_headers(reader)

    return HTTPRequest(
        method=method.upper(),
        target=target,
        version=version,
        headers=headers,
    )


async def read_request(reader: asyncio.StreamReader) -> HTTPRequest | None:
    request = await read_request_head(reader)
    if request is None:
        return None

    request.body = await read_body(reader, request.headers)
    return request


async def read_response(
    reader: asyncio.StreamReader,
    method: str = "GET",
) -> HTTPResponse:
    while True:
        status_line = await reader.readline()
        if not status_line:
            raise HTTPParseError("Connection closed before a status line")

        parts = status_line.decode("latin-1").rstrip("\r\n").split(" ", 2)
        if len(parts) < 2 or not parts[0].startswith("HTTP/1."):
            raise HTTPParseError(f"Invalid status line {status_line[:64]!r}")

        try:
            status = int(parts[1])

        except ValueError:
            raise HTTPParseError(f"Invalid status code {parts[1]!r}") from None

        headers = await read_headers(reader)

        # Interim responses carry no body, keep reading for the final one.
        if 100 <= status < 200 and status != 101:
            continue

        break

    response = HTTPResponse(
        status=status,
        reason=parts[2] if len(parts) > 2 else "",
        version=parts[0],
        headers=headers,
    )

    if method == "HEAD" or status in (101, 204, 304):
        return response

    response.body = await read_body(reader, headers, until_eof=True)
    return response


def _encode_head(start_line: str, headers: list[tuple[str, str]]) -> bytes:
    lines = [start_line]
    lines.extend(f"{name}: {value}" for name, value in headers)
    return (NEW_LINE.join(lines) + NEW_LINE * 2).encode("latin-1")


def _framed(headers: list[tuple[str, str]], body: bytes) -> list[tuple[str, str]]:
    framed = [
        (name, value) for name, value in headers
        if name.lower() not in ("content-length", "transfer-encoding")
    ]
    framed.append(("Content-Length", str(len(body))))
    return framed


def encode_request(request: HTTPRequest) -> bytes:
    headers = request.headers
    if request.body or find_header(headers, "content-length") is not None:
        headers = _framed(headers, request.body)

    return _encode_head(
        f"{request.method} {request.target} HTTP/1.1",
        headers,
    ) + request.body


def encode_response(
    response: HTTPResponse,
    head_only: bool = False,
) -> bytes:
    """
    Encode a response with a Content-Length frame. Responses to HEAD, and
    statuses that never carry a body, keep their headers as received.
    """
    if head_only or response.status in (101, 204, 304):
        return _encode_head(
            f"HTTP/1.1 {response.status} {response.reason}".rstrip(),
            response.headers,
        )

    return _encode_head(
        f"HTTP/1.1 {response.status} {response.reason}".rstrip(),
        _framed(response.headers, response.body),
    ) + response.body
