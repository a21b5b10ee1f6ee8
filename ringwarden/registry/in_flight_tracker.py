"""
Per-backend in-flight request tracking.

Counts the requests currently being forwarded to each backend so that a
drain can wait for them to finish before the backend is removed.

Usage:
    tracker = InFlightTracker()

    tracker.acquire("web-1")
    try:
        await forward(...)
    finally:
        tracker.release("web-1")

    drained = await tracker.wait_idle("web-1", timeout=30.0)
"""

import asyncio
from dataclasses import dataclass, field


@dataclass
class InFlightTracker:
    """
    Tracks in-flight requests by backend id.

    All counter operations are synchronous and run on the event loop
    thread. Waiters are woken through one asyncio.Event per backend that
    is set whenever the backend's count is zero.
    """

    _counts: dict[str, int] = field(default_factory=dict)
    _idle: dict[str, asyncio.Event] = field(default_factory=dict)
    _acquired_total: dict[str, int] = field(default_factory=dict)

    def _idle_event(self, backend_id: str) -> asyncio.Event:
        event = self._idle.get(backend_id)
        if event is None:
            event = asyncio.Event()
            if self._counts.get(backend_id, 0) == 0:
                event.set()

            self._idle[backend_id] = event

        return event

    def acquire(self, backend_id: str) -> int:
        count = self._counts.get(backend_id, 0) + 1
        self._counts[backend_id] = count
        self._acquired_total[backend_id] = self._acquired_total.get(backend_id, 0) + 1
        self._idle_event(backend_id).clear()
        return count

    def release(self, backend_id: str) -> int:
        count = max(self._counts.get(backend_id, 0) - 1, 0)
        self._counts[backend_id] = count

        if count == 0:
            self._idle_event(backend_id).set()

        return count

    def count(self, backend_id: str) -> int:
        return self._counts.get(backend_id, 0)

    def total(self) -> int:
        return sum(self._counts.values())

    def acquired_total(self, backend_id: str) -> int:
        return self._acquired_total.get(backend_id, 0)

    async def wait_idle(
        self,
        backend_id: str,
        timeout: float | None = None,
    ) -> bool:
        """
        Wait until the backend has no in-flight requests. Returns False
        if the timeout elapsed first.
        """
        event = self._idle_event(backend_id)
        if event.is_set():
            return True

        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True

        except asyncio.TimeoutError:
            return False

    def forget(self, backend_id: str) -> None:
        """
        Drop bookkeeping for a removed backend. Requests still in flight
        release against a fresh zero count.
        """
        self._counts.pop(backend_id, None)
        self._acquired_total.pop(backend_id, None)

        if (event := self._idle.pop(backend_id, None)) is not None:
            event.set()
