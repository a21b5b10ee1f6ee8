from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Protocol


class HeaderLookup(Protocol):
    def header(self, name: str) -> str | None: ...


class SessionKeyStrategy(Enum):
    IP_HASH = "ip_hash"
    REMOTE_ADDR = "remote_addr"
    HEADER = "header"
    COOKIE = "cookie"


class SessionKeyExtractor:
    """
    Derives the session key a request is routed by.

    Strategies:
    - ``ip_hash``: first three octets of an IPv4 client, the whole address
      for IPv6. Clients on the same /24 share a backend.
    - ``remote_addr``: the whole client address.
    - ``header:<name>``: a request header, falling back to the client address.
    - ``cookie:<name>``: a request cookie, falling back to the client address.
    """

    def __init__(self, strategy: str = "ip_hash") -> None:
        kind, _, argument = strategy.partition(":")

        try:
            self._strategy = SessionKeyStrategy(kind.strip().lower())

        except ValueError:
            raise ValueError(
                f"Unknown session key strategy {strategy!r}, expected one of "
                "ip_hash, remote_addr, header:<name>, cookie:<name>"
            ) from None

        self._argument = argument.strip()

        if self._strategy in (
            SessionKeyStrategy.HEADER,
            SessionKeyStrategy.COOKIE,
        ) and not self._argument:
            raise ValueError(f"Session key strategy {strategy!r} requires a name")

    @property
    def strategy(self) -> SessionKeyStrategy:
        return self._strategy

    def extract(
        self,
        client_host: str,
        request: HeaderLookup | None = None,
    ) -> str:
        match self._strategy:
            case SessionKeyStrategy.IP_HASH:
                return ip_hash_key(client_host)

            case SessionKeyStrategy.REMOTE_ADDR:
                return client_host

            case SessionKeyStrategy.HEADER:
                value = request.header(self._argument) if request else None
                return value.strip() if value else client_host

            case SessionKeyStrategy.COOKIE:
                cookies = request.header("cookie") if request else None
                value = find_cookie(cookies, self._argument) if cookies else None
                return value if value else client_host


def ip_hash_key(client_host: str) -> str:
    try:
        address = ipaddress.ip_address(client_host.split("%", 1)[0])

    except ValueError:
        return client_host

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    if isinstance(address, ipaddress.IPv4Address):
        return ".".join(str(address).split(".")[:3])

    return address.exploded


def find_cookie(cookie_header: str, name: str) -> str | None:
    for pair in cookie_header.split(";"):
        key, separator, value = pair.strip().partition("=")
        if separator and key.strip() == name:
            return value.strip().strip('"')

    return None
