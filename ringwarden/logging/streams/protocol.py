import asyncio


class LoggerProtocol(asyncio.streams.FlowControlMixin, asyncio.Protocol):

    def __init__(self) -> None:
        super().__init__()
        self.transport: asyncio.WriteTransport | None = None

    def connection_made(self, transport: asyncio.WriteTransport) -> None:
        self.transport = transport

    def connection_lost(self, exc: Exception | None) -> None:
        super().connection_lost(exc)
        self.transport = None
