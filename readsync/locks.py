"""
Named cooperative locks for read-modify-write sequences.

Two coroutines that both read an aggregate (annotations, collections,
archive membership, tombstones), suspend, and write it back would drop one
of the writes. Holding the aggregate's lock for the whole sequence keeps at
most one such sequence in flight. Waiters queue in arrival order.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class LockRegistry:
    """One ``asyncio.Lock`` per name, created on first use."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        async with self.get(name):
            yield

    def is_locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()
