"""
Critical sections

- KeyedLocks: in-process asyncio lock per key (episode centroid updates)
- LeaseManager: cross-process single-flight lease stored in SQLite
  (one consolidation run per user at a time)
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
import weakref
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from .storage import MemoryStorage

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One asyncio.Lock per key, released to GC once no task holds it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.get(key)
        async with lock:
            yield


class LeaseManager:
    """Named leases with expiry on top of MemoryStorage.

    A crashed holder stops blocking others once its lease expires.
    """

    def __init__(
        self,
        storage: MemoryStorage,
        owner: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.owner = owner or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._clock = clock

    def try_acquire(self, name: str, ttl: float, owner: str | None = None) -> bool:
        return self.storage.acquire_lease(name, owner or self.owner, ttl, self._clock())

    def release(self, name: str, owner: str | None = None) -> None:
        self.storage.release_lease(name, owner or self.owner)

    @asynccontextmanager
    async def lease(self, name: str, ttl: float) -> AsyncIterator[bool]:
        """Yield True while holding the lease, False if someone else has it."""
        # each entry gets its own owner token so concurrent tasks in one process exclude each other
        token = f"{self.owner}:{uuid.uuid4().hex[:8]}"
        acquired = self.try_acquire(name, ttl, owner=token)
        if not acquired:
            logger.debug(f"[Lease] {name} held elsewhere")
        try:
            yield acquired
        finally:
            if acquired:
                self.release(name, owner=token)
