from __future__ import annotations

import asyncio
import time
from typing import Callable

from ringwarden.errors import ProbeFailure
from ringwarden.logging import Logger
from ringwarden.logging.ringwarden_logging_models import ProbeDebug
from ringwarden.models import Backend
from ringwarden.registry import BackendRegistry

from .hysteresis import evaluate_probe
from .probes import (
    HTTPHealthCheck,
    ProbeCheck,
    ProbeConfig,
    ProbeResponse,
    ProbeResult,
)


class HealthProber:
    """
    Probes every registered backend on its own task.

    Each backend is checked once per period. A slow or hanging backend
    only ever delays its own task, and each check is bounded by the probe
    timeout. ``request_fast_probe`` wakes a backend's task early, which
    the front end does whenever forwarding to that backend fails.

    The prober follows registry membership: a task starts when a backend
    is registered and stops when it is removed. It never removes
    backends itself.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        config: ProbeConfig | None = None,
        check: ProbeCheck | None = None,
        logger: Logger | None = None,
        logger_name: str = "events",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._config = config or ProbeConfig()
        self._check = check or HTTPHealthCheck(path=self._config.path)
        self._logger = logger
        self._logger_name = logger_name
        self._clock = clock

        self._tasks: dict[str, asyncio.Task] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._probe_locks: dict[str, asyncio.Lock] = {}
        self._running = False

        self._registry.add_register_callback(self._on_register)
        self._registry.add_remove_callback(self._on_remove)

    @property
    def config(self) -> ProbeConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._running

    @property
    def probing(self) -> list[str]:
        return [
            backend_id for backend_id, task in self._tasks.items()
            if not task.done()
        ]

    async def start(self) -> None:
        if self._running:
            return

        self._running = True

        for backend in self._registry.snapshot():
            self._start_task(backend.backend_id)

    async def stop(self) -> None:
        self._running = False

        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._wakeups.clear()

        for task in tasks:
            task.cancel()

        await asyncio.gather(*tasks, return_exceptions=True)

    def request_fast_probe(self, backend_id: str) -> bool:
        """
        Probe a backend now instead of at its next period. Returns False
        if the backend has no running probe task.
        """
        wakeup = self._wakeups.get(backend_id)
        if wakeup is None:
            return False

        wakeup.set()
        return True

    async def probe(self, backend_id: str) -> ProbeResponse | None:
        """
        Run one probe against a backend and fold the result into its
        health. Returns None if the backend is not registered.
        """
        backend = self._registry.get(backend_id)
        if backend is None:
            return None

        lock = self._probe_locks.setdefault(backend_id, asyncio.Lock())

        async with lock:
            response = await self._run_check(backend)

            await self._registry.apply(
                backend_id,
                lambda current: evaluate_probe(
                    current,
                    response.succeeded,
                    self._config.failure_threshold,
                    self._config.success_threshold,
                    checked_at=self._clock(),
                ),
            )

        if self._logger:
            await self._logger.log(
                ProbeDebug(
                    message=f"Probe of {backend_id} returned {response.result.value}: {response.message}",
                    backend_id=backend_id,
                    result=response.result.value,
                    latency_ms=response.latency_ms,
                ),
                name=self._logger_name,
            )

        return response

    async def _run_check(self, backend: Backend) -> ProbeResponse:
        start_time = time.monotonic()

        try:
            success, message = await asyncio.wait_for(
                self._check(backend),
                timeout=self._config.timeout_seconds,
            )

            latency_ms = (time.monotonic() - start_time) * 1000

            if success:
                return ProbeResponse(
                    backend_id=backend.backend_id,
                    result=ProbeResult.SUCCESS,
                    message=message,
                    latency_ms=latency_ms,
                )

            return ProbeResponse(
                backend_id=backend.backend_id,
                result=ProbeResult.FAILURE,
                message=message,
                latency_ms=latency_ms,
                failure=ProbeFailure(backend.backend_id, message),
            )

        except asyncio.TimeoutError as err:
            latency_ms = (time.monotonic() - start_time) * 1000
            message = f"Probe timed out after {self._config.timeout_seconds}s"

            return ProbeResponse(
                backend_id=backend.backend_id,
                result=ProbeResult.TIMEOUT,
                message=message,
                latency_ms=latency_ms,
                failure=ProbeFailure(backend.backend_id, message, cause=err),
            )

        except Exception as err:
            latency_ms = (time.monotonic() - start_time) * 1000
            message = f"Probe error: {err!r}"

            return ProbeResponse(
                backend_id=backend.backend_id,
                result=ProbeResult.ERROR,
                message=message,
                latency_ms=latency_ms,
                failure=ProbeFailure(backend.backend_id, message, cause=err),
            )

    def _start_task(self, backend_id: str) -> None:
        task = self._tasks.get(backend_id)
        if task is not None and not task.done():
            return

        self._wakeups[backend_id] = asyncio.Event()
        self._tasks[backend_id] = asyncio.create_task(
            self._probe_loop(backend_id),
        )

    async def _probe_loop(self, backend_id: str) -> None:
        wakeup = self._wakeups[backend_id]

        while self._running and backend_id in self._registry:
            await self.probe(backend_id)

            try:
                await asyncio.wait_for(
                    wakeup.wait(),
                    timeout=self._config.period_seconds,
                )

            except asyncio.TimeoutError:
                pass

            wakeup.clear()

    def _on_register(self, backend: Backend) -> None:
        if self._running:
            self._start_task(backend.backend_id)

    def _on_remove(self, backend: Backend) -> None:
        self._wakeups.pop(backend.backend_id, None)
        self._probe_locks.pop(backend.backend_id, None)

        if (task := self._tasks.pop(backend.backend_id, None)) is not None:
            task.cancel()
