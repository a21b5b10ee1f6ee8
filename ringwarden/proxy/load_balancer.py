from __future__ import annotations

import asyncio
from typing import Any, Callable

import orjson

from ringwarden.errors import (
    BalancerError,
    DeadlineExceeded,
    ForwardingFailure,
    MalformedRequest,
    NoAvailableBackend,
)
from ringwarden.http import (
    REASONS,
    HTTPRequest,
    HTTPResponse,
    encode_response,
    read_body,
    read_request_head,
)
from ringwarden.logging import Logger
from ringwarden.logging.ringwarden_logging_models import (
    ForwardingFailed,
    RoutingFailure,
    ServerError,
    ServerInfo,
)
from ringwarden.models import Backend
from ringwarden.registry import BackendRegistry
from ringwarden.routing import AffinityRouter, SessionKeyExtractor

from .forwarder import BackendForwarder

CONTINUE = b"HTTP/1.1 100 Continue\r\n\r\n"


class LoadBalancerFront:
    """
    The HTTP/1.1 listener clients connect to.

    Client connections are kept alive between requests. Each request is
    routed by its session key and forwarded over a fresh upstream
    connection. A failed forward triggers a fast probe of that backend,
    and idempotent requests are then retried once on the next backend
    clockwise. The request deadline covers every attempt together, and
    once it expires the request fails with 504 without a retry.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        router: AffinityRouter,
        forwarder: BackendForwarder | None = None,
        session_keys: SessionKeyExtractor | None = None,
        host: str = "0.0.0.0",
        port: int = 8080,
        request_timeout: float = 60.0,
        max_concurrency: int = 1024,
        status_path: str | None = "/__ringwarden/status",
        status_provider: Callable[[], dict[str, Any]] | None = None,
        fast_probe: Callable[[str], Any] | None = None,
        logger: Logger | None = None,
        logger_name: str = "events",
        node_id: str = "ringwarden",
    ) -> None:
        self._registry = registry
        self._router = router
        self._forwarder = forwarder or BackendForwarder()
        self._session_keys = session_keys or SessionKeyExtractor()

        self._host = host
        self._port = port
        self._request_timeout = request_timeout
        self._status_path = status_path
        self._status_provider = status_provider
        self._fast_probe = fast_probe

        self._logger = logger
        self._logger_name = logger_name
        self._node_id = node_id

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.StreamWriter] = set()
        self._running = False

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> int:
        """
        Start listening. Returns the bound port, which differs from the
        configured one when that was 0.
        """
        self._server = await asyncio.start_server(
            self._handle_connection,
            host=self._host,
            port=self._port,
        )

        sockets = self._server.sockets
        if sockets:
            self._port = sockets[0].getsockname()[1]

        self._running = True

        if self._logger:
            await self._logger.log(
                ServerInfo(
                    message=f"Listening on {self._host}:{self._port}",
                    node_host=self._host,
                    node_port=self._port,
                    node_id=self._node_id,
                ),
                name=self._logger_name,
            )

        return self._port

    async def stop(self) -> None:
        self._running = False

        if self._server is None:
            return

        self._server.close()

        for writer in list(self._connections):
            writer.close()

        await self._server.wait_closed()
        self._server = None

    async def handle(
        self,
        request: HTTPRequest,
        client_host: str,
    ) -> HTTPResponse:
        """
        Produce the response for one client request. Never raises for
        routing or forwarding errors, those become 5xx responses.
        """
        if (
            self._status_path
            and request.path == self._status_path
            and request.method in ("GET", "HEAD")
        ):
            return self._status_response()

        async with self._semaphore:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._request_timeout
            session_key = self._session_keys.extract(client_host, request)

            try:
                return await asyncio.wait_for(
                    self._dispatch(request, client_host, session_key, deadline),
                    timeout=self._request_timeout,
                )

            except asyncio.TimeoutError:
                return self._error_response(
                    504,
                    DeadlineExceeded(self._request_timeout),
                )

            except DeadlineExceeded as err:
                return self._error_response(504, err)

            except NoAvailableBackend as err:
                if self._logger:
                    await self._logger.log(
                        RoutingFailure(
                            message=f"No healthy backend for {request.method} {request.target}",
                            session_key=session_key,
                            method=request.method,
                            target=request.target,
                            reason=err.message,
                        ),
                        name=self._logger_name,
                    )

                return self._error_response(503, err)

            except ForwardingFailure as err:
                return self._error_response(502, err)

    async def _dispatch(
        self,
        request: HTTPRequest,
        client_host: str,
        session_key: str,
        deadline: float,
    ) -> HTTPResponse:
        backend = await self._router.route(session_key)

        try:
            return await self._forward(
                backend,
                request,
                client_host,
                deadline,
                attempt=1,
            )

        except ForwardingFailure as err:
            if not request.idempotent:
                raise

            try:
                retry_backend = await self._router.next_backend(
                    session_key,
                    exclude=(backend.backend_id,),
                )

            except NoAvailableBackend:
                raise err from None

            return await self._forward(
                retry_backend,
                request,
                client_host,
                deadline,
                attempt=2,
            )

    async def _forward(
        self,
        backend: Backend,
        request: HTTPRequest,
        client_host: str,
        deadline: float,
        attempt: int,
    ) -> HTTPResponse:
        try:
            async with self._registry.track(backend.backend_id):
                return await self._forwarder.forward(
                    backend,
                    request,
                    client_host,
                    deadline,
                    self._request_timeout,
                )

        except ForwardingFailure as err:
            if self._fast_probe:
                self._fast_probe(backend.backend_id)

            if self._logger:
                await self._logger.log(
                    ForwardingFailed(
                        message=str(err),
                        backend_id=backend.backend_id,
                        address=f"{backend.host}:{backend.port}",
                        method=request.method,
                        target=request.target,
                        attempt=attempt,
                        will_retry=request.idempotent and attempt == 1,
                        error=err.message,
                    ),
                    name=self._logger_name,
                )

            raise

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._connections.add(writer)

        peer = writer.get_extra_info("peername")
        client_host = peer[0] if isinstance(peer, tuple) else "unknown"

        try:
            while self._running:
                try:
                    request = await read_request_head(reader)
                    if request is None:
                        break

                    if request.expects_continue:
                        writer.write(CONTINUE)
                        await writer.drain()

                    request.body = await read_body(reader, request.headers)

                except ValueError as err:
                    response = self._error_response(
                        400,
                        MalformedRequest(str(err), cause=err),
                    )
                    response.headers.append(("Connection", "close"))
                    writer.write(encode_response(response))
                    await writer.drain()
                    break

                response = await self.handle(request, client_host)

                keep_alive = request.keep_alive and self._running
                response.headers.append(
                    ("Connection", "keep-alive" if keep_alive else "close")
                )

                writer.write(
                    encode_response(
                        response,
                        head_only=request.method == "HEAD",
                    )
                )
                await writer.drain()

                if not keep_alive:
                    break

        except (ConnectionError, asyncio.IncompleteReadError):
            # Client went away mid-request.
            pass

        except Exception as err:
            if self._logger:
                await self._logger.log(
                    ServerError(
                        message=f"Connection from {client_host} failed: {err!r}",
                        node_host=self._host,
                        node_port=self._port,
                        node_id=self._node_id,
                    ),
                    name=self._logger_name,
                )

        finally:
            self._connections.discard(writer)
            writer.close()

    def _status_response(self) -> HTTPResponse:
        status = self._status_provider() if self._status_provider else {
            "backends": [
                backend.to_dict() for backend in self._registry.snapshot()
            ],
        }

        return HTTPResponse(
            status=200,
            reason=REASONS[200],
            headers=[
                ("Content-Type", "application/json"),
                ("Cache-Control", "no-store"),
            ],
            body=orjson.dumps(status),
        )

    def _error_response(
        self,
        status: int,
        error: BalancerError,
    ) -> HTTPResponse:
        return HTTPResponse(
            status=status,
            reason=REASONS.get(status, ""),
            headers=[("Content-Type", "application/json")],
            body=orjson.dumps({
                "status": status,
                "error": error.__class__.__name__,
                "message": error.message,
            }),
        )
