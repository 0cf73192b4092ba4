"""In-process keyed locks that reject a second concurrent writer.

Used to serialize mutations per session id and per patient order inside one
server process.  A writer that finds the key already held does not wait; it
gets a :class:`ConflictError` and the caller is expected to re-fetch state and
retry.  Cross-process exclusion is handled separately by the database
(``FOR UPDATE NOWAIT`` and advisory locks).
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from screening_rules.errors import ConflictError


class KeyedLocks:
    """Registry of ``asyncio.Lock`` objects created on demand per key."""

    def __init__(self, name: str = "resource") -> None:
        self._name = name
        self._locks: dict[str, asyncio.Lock] = {}

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Raises:
            ConflictError: another writer already holds ``key``.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            raise ConflictError(f"{self._name} {key} is being modified by another request")
        # Not locked and no await in between, so this acquire never blocks
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if not lock.locked() and self._locks.get(key) is lock:
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
