from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Iterator, Mapping


class BackendHealth(Enum):
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    DRAINING = "DRAINING"

    @property
    def routable(self) -> bool:
        return self is BackendHealth.HEALTHY


@dataclass(slots=True, frozen=True)
class Backend:
    """
    One upstream instance. Backends are immutable values: every health
    update builds a new Backend and swaps it into the registry whole.
    """

    backend_id: str
    host: str
    port: int
    health: BackendHealth = BackendHealth.HEALTHY
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_checked_at: float | None = None
    health_changed_at: float = field(default_factory=time.monotonic)
    registered_at: float = field(default_factory=time.monotonic)

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    @property
    def is_routable(self) -> bool:
        return self.health.routable

    @property
    def probed(self) -> bool:
        return self.last_checked_at is not None

    def with_health(
        self,
        health: BackendHealth,
        changed_at: float | None = None,
    ) -> Backend:
        if health == self.health:
            return self

        return replace(
            self,
            health=health,
            consecutive_failures=0,
            consecutive_successes=0,
            health_changed_at=changed_at if changed_at is not None else time.monotonic(),
        )

    def to_dict(self) -> dict:
        return {
            "backend_id": self.backend_id,
            "host": self.host,
            "port": self.port,
            "health": self.health.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_checked_at": self.last_checked_at,
        }


@dataclass(slots=True, frozen=True)
class HealthTransition:
    """A change in a backend's health, as reported to registry listeners."""

    backend: Backend
    previous: BackendHealth
    current: BackendHealth

    @property
    def routing_changed(self) -> bool:
        return self.previous.routable != self.current.routable


@dataclass(slots=True, frozen=True)
class RegistrySnapshot:
    """Read-only point-in-time view of every registered backend."""

    backends: Mapping[str, Backend] = field(
        default_factory=lambda: MappingProxyType({})
    )
    taken_at: float = field(default_factory=time.monotonic)

    def __len__(self) -> int:
        return len(self.backends)

    def __iter__(self) -> Iterator[Backend]:
        return iter(self.backends.values())

    def __contains__(self, backend_id: str) -> bool:
        return backend_id in self.backends

    def get(self, backend_id: str) -> Backend | None:
        return self.backends.get(backend_id)

    def with_health(self, health: BackendHealth) -> list[Backend]:
        return [
            backend for backend in self.backends.values()
            if backend.health == health
        ]

    @property
    def healthy(self) -> list[Backend]:
        return self.with_health(BackendHealth.HEALTHY)

    @property
    def healthy_count(self) -> int:
        return len(self.healthy)
