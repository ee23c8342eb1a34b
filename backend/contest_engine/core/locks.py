"""
Keyed asyncio locks.

A LockArena hands out one asyncio.Lock per key (participant id, contest id).
Locks live only while someone holds or waits on them, so the arena does not
grow with the number of participants ever seen.
"""

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

from contest_engine.core.exceptions import OperationTimeout


class LockArena:
    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable, timeout: float | None = None) -> AsyncIterator[None]:
        """Acquire the lock for ``key`` or raise OperationTimeout."""
        lock = self._lock_for(key)
        wait = self.timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait)
        except asyncio.TimeoutError:
            raise OperationTimeout(
                f"Timed out waiting for {self.name} lock; please retry",
                details={"key": str(key)},
            )
        try:
            yield
        finally:
            lock.release()
