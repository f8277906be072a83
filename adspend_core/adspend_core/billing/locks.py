"""Per-account in-process locks.

Each credit account is its own unit of serialization.  There is no global or
cross-account lock: operations on different accounts never wait on each
other, and no operation ever holds two account locks.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager


class AccountLockRegistry:
    """Hands out one ``asyncio.Lock`` per account id.

    Locks are held in a ``WeakValueDictionary`` so idle accounts do not
    accumulate entries.  A lock stays alive for as long as any coroutine is
    holding or waiting on it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncGenerator[None, None]:
        """Serialize the enclosed block against other holders of *account_id*."""
        lock = self._lock_for(account_id)
        async with lock:
            yield

    def is_locked(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return lock is not None and lock.locked()
