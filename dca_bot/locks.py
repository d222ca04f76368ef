"""
Per-key asyncio locks that are dropped once idle.

Keys usually come from request paths, so a lock only lives while some
task holds it or is waiting for it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # also runs when the wait for the lock is cancelled
            self._users[key] -= 1
            if self._users[key] == 0:
                self._users.pop(key)
                self._locks.pop(key)
