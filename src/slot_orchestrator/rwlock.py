"""Asyncio reader-writer lock guarding the slot registry.

Many readers (status queries, UI refresh) may hold the lock at once; a writer
(lifecycle commit) holds it alone. Pending writers block new readers so that a
steady stream of status polls cannot starve lifecycle operations.

Usage::

    lock = AsyncRWLock(name="registry")

    async with lock.read_lock():
        snapshot = [slot.snapshot() for slot in registry.values()]

    async with lock.write_lock():
        registry[name] = slot
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class AsyncRWLock:
    """Writer-preferring reader-writer lock built on ``asyncio.Condition``.

    Writers are served in FIFO order. The lock is not reentrant: a task that
    holds the write lock must not try to take the read lock.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name or f"AsyncRWLock-{id(self):x}"
        self._readers = 0
        self._writer_active = False
        self._writer_queue: deque[object] = deque()
        self._cond = asyncio.Condition()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer_active

    async def acquire_read(self) -> None:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer_active and not self._writer_queue)
            self._readers += 1

    async def release_read(self) -> None:
        async with self._cond:
            if self._readers <= 0:
                logger.error(f"[{self.name}] release_read called with no active readers")
                return
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_write(self) -> None:
        ticket = object()
        async with self._cond:
            self._writer_queue.append(ticket)
            try:
                await self._cond.wait_for(
                    lambda: self._writer_queue[0] is ticket
                    and self._readers == 0
                    and not self._writer_active
                )
            except BaseException:
                self._writer_queue.remove(ticket)
                self._cond.notify_all()
                raise
            self._writer_queue.popleft()
            self._writer_active = True

    async def release_write(self) -> None:
        async with self._cond:
            if not self._writer_active:
                logger.error(f"[{self.name}] release_write called with no active writer")
                return
            self._writer_active = False
            self._cond.notify_all()

    @asynccontextmanager
    async def read_lock(self) -> AsyncIterator[None]:
        """Shared access for the duration of the block."""
        await self.acquire_read()
        try:
            yield
        finally:
            await self.release_read()

    @asynccontextmanager
    async def write_lock(self) -> AsyncIterator[None]:
        """Exclusive access for the duration of the block."""
        await self.acquire_write()
        try:
            yield
        finally:
            await self.release_write()
