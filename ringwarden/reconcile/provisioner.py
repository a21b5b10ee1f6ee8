from __future__ import annotations

import asyncio
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from ringwarden.errors import ProvisioningError
from ringwarden.logging import Logger
from ringwarden.logging.ringwarden_logging_models import ReplacementRequested


class ProvisioningStatus(Enum):
    SUBMITTED = "SUBMITTED"
    COMPLETED = "COMPLETED"


@dataclass(slots=True)
class ProvisioningHandle:
    """Receipt for one replacement request."""

    reason: str
    status: ProvisioningStatus = ProvisioningStatus.SUBMITTED
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    issued_at: float = field(default_factory=time.monotonic)
    detail: str = ""


class Provisioner(Protocol):
    """
    Whatever brings up replacement instances. The reconciler only asks,
    it never waits on the new capacity through this interface. New
    instances are seen when they register and pass health checks.
    """

    async def request_replacement(self, reason: str) -> ProvisioningHandle: ...


class LogOnlyProvisioner:
    """
    Records replacement requests and logs them for an external operator
    or autoscaler to act on.
    """

    def __init__(
        self,
        logger: Logger | None = None,
        logger_name: str = "events",
    ) -> None:
        self._logger = logger
        self._logger_name = logger_name
        self.requests: list[ProvisioningHandle] = []

    async def request_replacement(self, reason: str) -> ProvisioningHandle:
        handle = ProvisioningHandle(reason=reason)
        self.requests.append(handle)

        if self._logger:
            await self._logger.log(
                ReplacementRequested(
                    message=f"Replacement capacity requested: {reason}",
                    request_id=handle.request_id,
                    reason=reason,
                ),
                name=self._logger_name,
            )

        return handle


class CommandProvisioner:
    """
    Runs an operator command, such as a ``docker-compose up -d`` step or
    an autoscaling CLI call, for every replacement request.

    The reason is passed to the command in ``RINGWARDEN_REPLACEMENT_REASON``
    and the request id in ``RINGWARDEN_REPLACEMENT_ID``.
    """

    def __init__(
        self,
        command: str,
        timeout: float = 300.0,
        logger: Logger | None = None,
        logger_name: str = "events",
    ) -> None:
        self._command = command
        self._timeout = timeout
        self._logger = logger
        self._logger_name = logger_name

    @property
    def command(self) -> str:
        return self._command

    @property
    def timeout(self) -> float:
        return self._timeout

    async def request_replacement(self, reason: str) -> ProvisioningHandle:
        handle = ProvisioningHandle(reason=reason)

        if self._logger:
            await self._logger.log(
                ReplacementRequested(
                    message=f"Running replacement command for: {reason}",
                    request_id=handle.request_id,
                    reason=reason,
                ),
                name=self._logger_name,
            )

        try:
            process = await asyncio.create_subprocess_shell(
                self._command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={
                    **os.environ,
                    "RINGWARDEN_REPLACEMENT_REASON": reason,
                    "RINGWARDEN_REPLACEMENT_ID": handle.request_id,
                },
            )

        except OSError as err:
            raise ProvisioningError(
                f"could not start {self._command!r}",
                cause=err,
                command=self._command,
            ) from err

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self._timeout,
            )

        except asyncio.TimeoutError as err:
            process.kill()
            await process.wait()

            raise ProvisioningError(
                f"{self._command!r} did not finish within {self._timeout}s",
                cause=err,
                command=self._command,
            ) from err

        if process.returncode != 0:
            raise ProvisioningError(
                f"{self._command!r} exited with status {process.returncode}",
                command=self._command,
                returncode=process.returncode,
                stderr=stderr.decode(errors="replace").strip()[-512:],
            )

        handle.status = ProvisioningStatus.COMPLETED
        handle.detail = stdout.decode(errors="replace").strip()[-512:]

        return handle
