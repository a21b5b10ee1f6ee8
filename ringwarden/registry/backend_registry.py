from __future__ import annotations

import contextlib
import inspect
import time
from types import MappingProxyType
from typing import AsyncIterator, Awaitable, Callable

from ringwarden.concurrency import ReadWriteLock
from ringwarden.logging import Logger, LogLevel
from ringwarden.logging.ringwarden_logging_models import (
    BackendHealthTransition,
    DrainInfo,
)
from ringwarden.models import (
    Backend,
    BackendHealth,
    HealthTransition,
    RegistrySnapshot,
)
from ringwarden.routing.consistent_hash import ConsistentHashRing

from .in_flight_tracker import InFlightTracker

BackendCallback = Callable[[Backend], Awaitable[None] | None]
TransitionCallback = Callable[[HealthTransition], Awaitable[None] | None]


class BackendRegistry:
    """
    The set of known backends and their health.

    Writers (the prober, the reconciler, operator drains) hold the write
    lock while they swap a backend and update the ring. Routing holds the
    read lock. Every write also publishes a fresh immutable snapshot, so
    ``snapshot()`` never waits on the lock.

    Only Healthy backends are placed on the ring. The ring changes only
    when a backend crosses between Healthy and the non-routable states.
    """

    def __init__(
        self,
        virtual_nodes: int = 160,
        ring: ConsistentHashRing | None = None,
        tracker: InFlightTracker | None = None,
        logger: Logger | None = None,
        logger_name: str = "events",
    ) -> None:
        self._ring = ring or ConsistentHashRing(virtual_nodes=virtual_nodes)
        self._tracker = tracker or InFlightTracker()
        self._lock = ReadWriteLock()
        self._backends: dict[str, Backend] = {}
        self._snapshot = RegistrySnapshot()

        self._logger = logger
        self._logger_name = logger_name

        self._register_callbacks: list[BackendCallback] = []
        self._remove_callbacks: list[BackendCallback] = []
        self._transition_callbacks: list[TransitionCallback] = []

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    @property
    def ring(self) -> ConsistentHashRing:
        return self._ring

    @property
    def tracker(self) -> InFlightTracker:
        return self._tracker

    def __len__(self) -> int:
        return len(self._backends)

    def __contains__(self, backend_id: str) -> bool:
        return backend_id in self._backends

    def get(self, backend_id: str) -> Backend | None:
        return self._backends.get(backend_id)

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def healthy_count(self) -> int:
        return self._snapshot.healthy_count

    def add_register_callback(self, callback: BackendCallback) -> None:
        self._register_callbacks.append(callback)

    def add_remove_callback(self, callback: BackendCallback) -> None:
        self._remove_callbacks.append(callback)

    def add_transition_callback(self, callback: TransitionCallback) -> None:
        self._transition_callbacks.append(callback)

    async def register(self, backend: Backend) -> Backend:
        """
        Add a backend, or replace the one with the same id when its address
        changed. Registering a known id at the same address keeps the stored
        backend, including its health and probe counters, and returns it.
        """
        async with self._lock.write():
            previous = self._backends.get(backend.backend_id)
            if previous is not None and previous.address == backend.address:
                return previous

            self._backends[backend.backend_id] = backend
            self._sync_ring(backend)
            self._publish()

        if previous is None:
            await self._notify(self._register_callbacks, backend)

        elif previous.health != backend.health:
            await self._on_transition(
                HealthTransition(
                    backend=backend,
                    previous=previous.health,
                    current=backend.health,
                )
            )

        return backend

    async def remove(self, backend_id: str) -> Backend | None:
        """
        Remove a backend. Removing an unknown id is a no-op.
        """
        async with self._lock.write():
            backend = self._backends.pop(backend_id, None)
            if backend is None:
                return None

            self._ring.remove_node(backend_id)
            self._publish()

        self._tracker.forget(backend_id)
        await self._notify(self._remove_callbacks, backend)

        return backend

    async def set_health(
        self,
        backend_id: str,
        health: BackendHealth,
    ) -> HealthTransition | None:
        return await self.apply(
            backend_id,
            lambda backend: backend.with_health(health),
        )

    async def apply(
        self,
        backend_id: str,
        mutation: Callable[[Backend], Backend],
    ) -> HealthTransition | None:
        """
        Atomically replace a backend with ``mutation(backend)``. Returns the
        health transition when the health changed, otherwise None.
        """
        async with self._lock.write():
            current = self._backends.get(backend_id)
            if current is None:
                return None

            updated = mutation(current)
            if updated is current:
                return None

            self._backends[backend_id] = updated

            transition: HealthTransition | None = None
            if updated.health != current.health:
                transition = HealthTransition(
                    backend=updated,
                    previous=current.health,
                    current=updated.health,
                )

                if transition.routing_changed:
                    self._sync_ring(updated)

            self._publish()

        if transition:
            await self._on_transition(transition)

        return transition

    @contextlib.asynccontextmanager
    async def track(self, backend_id: str) -> AsyncIterator[int]:
        in_flight = self._tracker.acquire(backend_id)
        try:
            yield in_flight

        finally:
            self._tracker.release(backend_id)

    async def drain(
        self,
        backend_id: str,
        timeout: float = 30.0,
    ) -> bool:
        """
        Stop routing new requests to a backend, wait for its in-flight
        requests to finish, then remove it. Returns False if the timeout
        elapsed first; the backend is removed either way.
        """
        if backend_id not in self._backends:
            return True

        await self.set_health(backend_id, BackendHealth.DRAINING)

        if self._logger:
            await self._logger.log(
                DrainInfo(
                    message=f"Draining {backend_id} with {self._tracker.count(backend_id)} requests in flight",
                    backend_id=backend_id,
                    in_flight=self._tracker.count(backend_id),
                ),
                name=self._logger_name,
            )

        drained = await self._tracker.wait_idle(backend_id, timeout=timeout)

        if not drained and self._logger:
            await self._logger.log(
                DrainInfo(
                    message=f"Drain of {backend_id} timed out after {timeout:.1f}s, removing anyway",
                    backend_id=backend_id,
                    in_flight=self._tracker.count(backend_id),
                    forced=True,
                    level=LogLevel.WARN,
                ),
                name=self._logger_name,
            )

        await self.remove(backend_id)

        return drained

    def _sync_ring(self, backend: Backend) -> None:
        if backend.is_routable:
            self._ring.add_node(backend.backend_id)

        else:
            self._ring.remove_node(backend.backend_id)

    def _publish(self) -> None:
        self._snapshot = RegistrySnapshot(
            backends=MappingProxyType(dict(self._backends)),
            taken_at=time.monotonic(),
        )

    async def _on_transition(self, transition: HealthTransition) -> None:
        backend = transition.backend

        if self._logger:
            await self._logger.log(
                BackendHealthTransition(
                    message=(
                        f"Backend {backend.backend_id} at {backend.host}:{backend.port} "
                        f"went {transition.previous.value} -> {transition.current.value}"
                    ),
                    backend_id=backend.backend_id,
                    address=f"{backend.host}:{backend.port}",
                    previous=transition.previous.value,
                    current=transition.current.value,
                    consecutive_failures=backend.consecutive_failures,
                    consecutive_successes=backend.consecutive_successes,
                ),
                name=self._logger_name,
            )

        await self._notify(self._transition_callbacks, transition)

    async def _notify(self, callbacks: list[Callable], value) -> None:
        for callback in list(callbacks):
            result = callback(value)
            if inspect.isawaitable(result):
                await result
