# locks.py
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class KeyedLocks:
    """asyncio locks created on demand, one per key (a UTC day, an owner id...).

    A key's lock lives only while someone holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def _enter(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _leave(self, key: Hashable):
        self._users[key] -= 1
        if not self._users[key]:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: Hashable):
        """Acquires the locks for all keys in sorted order so overlapping holders never deadlock."""
        ordered = sorted(set(keys))
        locks = [self._enter(key) for key in ordered]
        acquired = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._leave(key)
