from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator


class ReadWriteLock:
    """
    Asyncio reader-writer lock with writer preference.

    Any number of readers may hold the lock together. A writer holds it
    alone. Once a writer is waiting, new readers queue behind it so a
    steady stream of routing reads cannot starve health transitions.
    """

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._readers: int = 0
        self._writer_active: bool = False
        self._writers_waiting: int = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer_active

    async def acquire_read(self) -> None:
        async with self._condition:
            while self._writer_active or self._writers_waiting > 0:
                await self._condition.wait()

            self._readers += 1

    async def release_read(self) -> None:
        async with self._condition:
            self._readers -= 1
            if self._readers == 0:
                self._condition.notify_all()

    async def acquire_write(self) -> None:
        async with self._condition:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers > 0:
                    await self._condition.wait()

            except asyncio.CancelledError:
                self._writers_waiting -= 1
                self._condition.notify_all()
                raise

            self._writers_waiting -= 1
            self._writer_active = True

    async def release_write(self) -> None:
        async with self._condition:
            self._writer_active = False
            self._condition.notify_all()

    @contextlib.asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        await self.acquire_read()
        try:
            yield

        finally:
            await self.release_read()

    @contextlib.asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        await self.acquire_write()
        try:
            yield

        finally:
            await self.release_write()
