"""
Concurrency Primitives

- ``CancellationToken``: cooperative cancellation for long batch jobs.
  Checked between documents and between embedding batches, never while an
  oracle call is in flight.
- ``KeyedLock``: one ``asyncio.Lock`` per key (document id). Locks are
  created on demand and dropped once no task holds or waits on them, so the
  table does not grow with the number of documents ever seen.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .errors import IndexingCancelled


class CancellationToken:
    """Flag shared between a job and whoever may cancel it."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self._cancelled = True
        self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise IndexingCancelled(self._reason or "Operation cancelled")


class KeyedLock:
    """Per-key mutual exclusion for coroutines."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
