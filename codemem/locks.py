from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class RWLock:
    """Many readers or one writer; a waiting writer blocks new readers."""

    def __init__(self) -> None:
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0
        self._cond = asyncio.Condition()

    @property
    def idle(self) -> bool:
        return not self._writer and self._readers == 0 and self._writers_waiting == 0

    async def acquire_read(self) -> None:
        async with self._cond:
            while self._writer or self._writers_waiting > 0:
                await self._cond.wait()
            self._readers += 1

    async def release_read(self) -> None:
        async with self._cond:
            self._readers = max(0, self._readers - 1)
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_write(self) -> None:
        # Register intent before taking the condition so that readers
        # arriving meanwhile queue behind this writer.
        self._writers_waiting += 1
        registered = True
        try:
            async with self._cond:
                try:
                    while self._writer or self._readers > 0:
                        await self._cond.wait()
                    self._writer = True
                finally:
                    self._writers_waiting -= 1
                    registered = False
                    if not self._writer:
                        # Cancelled while waiting.
                        self._cond.notify_all()
        finally:
            if registered:
                self._writers_waiting -= 1

    async def release_write(self) -> None:
        async with self._cond:
            self._writer = False
            self._cond.notify_all()

    @asynccontextmanager
    async def read_lock(self) -> AsyncIterator[None]:
        await self.acquire_read()
        try:
            yield
        finally:
            await self.release_read()

    @asynccontextmanager
    async def write_lock(self) -> AsyncIterator[None]:
        await self.acquire_write()
        try:
            yield
        finally:
            await self.release_write()


class FileLockRegistry:
    """One RWLock per SourceFile, keyed by its normalized relative path."""

    def __init__(self) -> None:
        self._locks: Dict[str, RWLock] = {}
        self._guard = asyncio.Lock()

    async def get(self, rel_path: str) -> RWLock:
        async with self._guard:
            lock = self._locks.get(rel_path)
            if lock is None:
                lock = RWLock()
                self._locks[rel_path] = lock
            return lock

    async def discard(self, rel_path: str) -> None:
        """Forget the lock for a removed file once nobody holds it."""
        async with self._guard:
            lock = self._locks.get(rel_path)
            if lock is not None and lock.idle:
                self._locks.pop(rel_path, None)

    @asynccontextmanager
    async def reading(self, rel_path: str) -> AsyncIterator[None]:
        lock = await self.get(rel_path)
        async with lock.read_lock():
            yield

    @asynccontextmanager
    async def writing(self, rel_path: str) -> AsyncIterator[None]:
        lock = await self.get(rel_path)
        async with lock.write_lock():
            yield

    def __len__(self) -> int:
        return len(self._locks)
