"""
Keyed asyncio locks.

Serializes work per company, thread, stay or sender inside one worker process.
Database row locks (SELECT ... FOR UPDATE) cover the multi-worker case on
PostgreSQL; SQLite ignores FOR UPDATE, so these locks are what keeps tests
and single-process deployments consistent.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Hashable
from weakref import WeakValueDictionary


class KeyedLocks:
    def __init__(self, name: str):
        self.name = name
        self._locks: "WeakValueDictionary[Hashable, asyncio.Lock]" = WeakValueDictionary()

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self.get(key)
        async with lock:
            yield


company_locks = KeyedLocks("company")
thread_locks = KeyedLocks("thread")
stay_locks = KeyedLocks("stay")
contact_locks = KeyedLocks("contact")
