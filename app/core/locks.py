# app/core/locks.py
"""
Per-key asyncio locks.

Used to make Non-Report timer replacement atomic per device within a worker.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, AsyncIterator


class KeyedLocks:
    """Hands out one asyncio.Lock per key and drops it once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
