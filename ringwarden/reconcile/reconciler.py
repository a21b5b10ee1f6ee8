from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ringwarden.errors import ProvisioningError, ProvisioningTimeout
from ringwarden.logging import Logger, LogLevel
from ringwarden.logging.ringwarden_logging_models import (
    ProvisioningEscalation,
    ProvisioningFailed,
    ReconcileAction,
)
from ringwarden.models import (
    Backend,
    BackendHealth,
    HealthTransition,
    RegistrySnapshot,
)
from ringwarden.registry import BackendRegistry

from .provisioner import Provisioner, ProvisioningHandle


class CapacityState(Enum):
    AT_CAPACITY = "AT_CAPACITY"
    BELOW_CAPACITY = "BELOW_CAPACITY"
    REPLACING = "REPLACING"


@dataclass(slots=True, frozen=True)
class CapacityTransition:
    previous: CapacityState
    current: CapacityState
    healthy: int
    action: str
    at: float


class Reconciler:
    """
    Keeps the healthy backend count at or above ``min_healthy``.

    AT_CAPACITY moves to BELOW_CAPACITY when the healthy count drops
    under the minimum. Issuing a replacement request moves it on to
    REPLACING. The request is fire-and-forget; the reconciler learns
    about new capacity only when it registers and passes health checks.

    REPLACING returns to AT_CAPACITY once ``min_healthy`` backends are
    Healthy with a passing probe, and at least one of them arrived or
    recovered after the request was issued. Until then, each
    ``grace_period`` without progress raises a ProvisioningTimeout, emits
    an escalation event and issues the request again.

    Backends that stay Unhealthy longer than ``reap_after`` are removed.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        provisioner: Provisioner,
        min_healthy: int = 1,
        desired_capacity: int = 2,
        grace_period: float = 300.0,
        interval: float = 5.0,
        reap_after: float | None = 600.0,
        history_size: int = 256,
        logger: Logger | None = None,
        logger_name: str = "events",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._provisioner = provisioner
        self._min_healthy = min_healthy
        self._desired_capacity = desired_capacity
        self._grace_period = grace_period
        self._interval = interval
        self._reap_after = reap_after
        self._logger = logger
        self._logger_name = logger_name
        self._clock = clock

        self._state = CapacityState.AT_CAPACITY
        self._transitions: deque[CapacityTransition] = deque(maxlen=history_size)
        self._issued_at: float | None = None
        self._replacing_since: float | None = None
        self._attempts: int = 0
        self._handles: deque[ProvisioningHandle] = deque(maxlen=history_size)
        self._pending: set[asyncio.Future] = set()

        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._running = False

        self._registry.add_transition_callback(self._on_transition)
        self._registry.add_remove_callback(self._on_remove)

    @property
    def state(self) -> CapacityState:
        return self._state

    @property
    def transitions(self) -> list[CapacityTransition]:
        return list(self._transitions)

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def handles(self) -> list[ProvisioningHandle]:
        return list(self._handles)

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._running = False

        tasks = [
            task for task in (self._task, *self._pending)
            if task is not None
        ]

        for task in tasks:
            task.cancel()

        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._pending.clear()

    def wake(self) -> None:
        self._wakeup.set()

    async def wait_for_issued(self) -> None:
        """Wait for every outstanding replacement request to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def reconcile(self) -> CapacityState:
        """
        Run one control step: reap long-unhealthy backends, then advance
        the capacity state machine.
        """
        now = self._clock()

        await self._reap(now)

        snapshot = self._registry.snapshot()
        healthy = snapshot.healthy_count

        if self._state == CapacityState.AT_CAPACITY:
            if healthy < self._min_healthy:
                await self._transition(
                    CapacityState.BELOW_CAPACITY,
                    healthy,
                    "capacity_lost",
                    now,
                )

                # Issue on the next step, which runs at once, unless capacity
                # came back in between.
                self._wakeup.set()

        elif self._state == CapacityState.BELOW_CAPACITY:
            if healthy >= self._min_healthy:
                await self._transition(
                    CapacityState.AT_CAPACITY,
                    healthy,
                    "recovered",
                    now,
                )

            else:
                self._attempts = 0
                self._replacing_since = now
                self._issue(healthy, now)
                await self._transition(
                    CapacityState.REPLACING,
                    healthy,
                    "replacement_issued",
                    now,
                )

        elif self._state == CapacityState.REPLACING:
            if self._replacement_arrived(snapshot):
                await self._transition(
                    CapacityState.AT_CAPACITY,
                    healthy,
                    "replacement_healthy",
                    now,
                )
                self._issued_at = None
                self._replacing_since = None

            elif now - self._issued_at >= self._grace_period:
                await self._escalate(
                    ProvisioningTimeout(self._attempts, now - self._issued_at),
                )
                self._issue(healthy, now)

        return self._state

    def status(self) -> dict[str, Any]:
        snapshot = self._registry.snapshot()
        return {
            "state": self._state.value,
            "healthy": snapshot.healthy_count,
            "registered": len(snapshot),
            "min_healthy": self._min_healthy,
            "desired_capacity": self._desired_capacity,
            "replacement_attempts": self._attempts,
            "replacing_for": (
                self._clock() - self._replacing_since
                if self._replacing_since is not None
                else None
            ),
        }

    def _replacement_arrived(self, snapshot: RegistrySnapshot) -> bool:
        passing = [
            backend for backend in snapshot.healthy
            if backend.probed and backend.consecutive_successes > 0
        ]

        if len(passing) < self._min_healthy:
            return False

        return any(
            self._is_new(backend) for backend in passing
        )

    def _is_new(self, backend: Backend) -> bool:
        return (
            backend.registered_at >= self._replacing_since
            or backend.health_changed_at >= self._replacing_since
        )

    def _issue(self, healthy: int, now: float) -> None:
        self._attempts += 1
        self._issued_at = now

        deficit = max(self._desired_capacity - healthy, 1)
        reason = (
            f"{healthy} healthy backends against a minimum of {self._min_healthy}"
            f" and a desired capacity of {self._desired_capacity},"
            f" {deficit} short (attempt {self._attempts})"
        )

        pending = asyncio.ensure_future(
            self._request_replacement(reason, self._attempts),
        )
        self._pending.add(pending)
        pending.add_done_callback(self._pending.discard)

    async def _request_replacement(self, reason: str, attempt: int) -> None:
        try:
            handle = await self._provisioner.request_replacement(reason)
            self._handles.append(handle)

        except ProvisioningError as err:
            await self._log_provisioning_failure(attempt, reason, err)

        except Exception as err:
            await self._log_provisioning_failure(
                attempt,
                reason,
                ProvisioningError(repr(err), cause=err),
            )

    async def _log_provisioning_failure(
        self,
        attempt: int,
        reason: str,
        err: ProvisioningError,
    ) -> None:
        if self._logger:
            await self._logger.log(
                ProvisioningFailed(
                    message=str(err),
                    attempt=attempt,
                    reason=reason,
                    error=err.message,
                ),
                name=self._logger_name,
            )

    async def _escalate(self, timeout: ProvisioningTimeout) -> None:
        if self._logger:
            await self._logger.log(
                ProvisioningEscalation(
                    message=str(timeout),
                    attempt=timeout.attempt,
                    waited_seconds=timeout.waited,
                    reason=timeout.message,
                ),
                name=self._logger_name,
            )

    async def _reap(self, now: float) -> None:
        if not self._reap_after or self._reap_after <= 0:
            return

        expired = [
            backend for backend in self._registry.snapshot()
            if backend.health == BackendHealth.UNHEALTHY
            and now - backend.health_changed_at >= self._reap_after
        ]

        for backend in expired:
            await self._registry.remove(backend.backend_id)

            if self._logger:
                await self._logger.log(
                    ReconcileAction(
                        message=(
                            f"Reaped {backend.backend_id}, unhealthy for "
                            f"{now - backend.health_changed_at:.1f}s"
                        ),
                        previous_state=self._state.value,
                        current_state=self._state.value,
                        healthy=self._registry.healthy_count(),
                        min_healthy=self._min_healthy,
                        desired_capacity=self._desired_capacity,
                        action="reap",
                    ),
                    name=self._logger_name,
                )

    async def _transition(
        self,
        state: CapacityState,
        healthy: int,
        action: str,
        now: float,
    ) -> None:
        previous = self._state
        self._state = state
        self._transitions.append(
            CapacityTransition(
                previous=previous,
                current=state,
                healthy=healthy,
                action=action,
                at=now,
            )
        )

        if self._logger:
            await self._logger.log(
                ReconcileAction(
                    message=f"Capacity {previous.value} -> {state.value} ({action})",
                    previous_state=previous.value,
                    current_state=state.value,
                    healthy=healthy,
                    min_healthy=self._min_healthy,
                    desired_capacity=self._desired_capacity,
                    action=action,
                    level=(
                        LogLevel.INFO
                        if state == CapacityState.AT_CAPACITY
                        else LogLevel.WARN
                    ),
                ),
                name=self._logger_name,
            )

    async def _run(self) -> None:
        while self._running:
            await self.reconcile()

            try:
                await asyncio.wait_for(
                    self._wakeup.wait(),
                    timeout=self._interval,
                )

            except asyncio.TimeoutError:
                pass

            self._wakeup.clear()

    def _on_transition(self, transition: HealthTransition) -> None:
        self.wake()

    def _on_remove(self, backend: Backend) -> None:
        self.wake()
