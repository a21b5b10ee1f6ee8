from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from ringwarden.errors import NoAvailableBackend
from ringwarden.models import Backend

if TYPE_CHECKING:
    from ringwarden.registry import BackendRegistry


class AffinityRouter:
    """
    Maps session keys to Healthy backends through the registry's ring.

    The ring only ever holds Healthy backends, so a lookup never has to
    skip unhealthy entries. When a backend drops out, the keys it owned
    fall through to the next backend clockwise. When it returns, it
    reclaims exactly the same range.
    """

    def __init__(self, registry: BackendRegistry) -> None:
        self._registry = registry

    async def route(self, session_key: str) -> Backend:
        async with self._registry.lock.read():
            for backend_id in self._registry.ring.walk(session_key):
                backend = self._registry.get(backend_id)
                if backend is not None and backend.is_routable:
                    return backend

        raise NoAvailableBackend(session_key)

    async def next_backend(
        self,
        session_key: str,
        exclude: Iterable[str] = (),
    ) -> Backend:
        excluded = set(exclude)

        async with self._registry.lock.read():
            for backend_id in self._registry.ring.walk(session_key):
                if backend_id in excluded:
                    continue

                backend = self._registry.get(backend_id)
                if backend is not None and backend.is_routable:
                    return backend

        raise NoAvailableBackend(session_key)

    async def candidates(
        self,
        session_key: str,
        count: int = 2,
    ) -> list[Backend]:
        backends: list[Backend] = []
        if count < 1:
            return backends

        async with self._registry.lock.read():
            for backend_id in self._registry.ring.walk(session_key):
                backend = self._registry.get(backend_id)
                if backend is None or not backend.is_routable:
                    continue

                backends.append(backend)
                if len(backends) >= count:
                    break

        return backends
