"""
Per-instance locks shared by kopf handlers, the resync timer and the
namespace watch fast path.

kopf already serializes handlers of one object, but namespace events arrive
on a different resource stream. Every code path that writes RBAC or the
cluster secret on behalf of an instance holds that instance's lock.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class InstanceLocks:
    """
    Registry of asyncio locks keyed by (namespace, name).

    Example:
        locks = InstanceLocks()
        async with locks.hold(("argocd", "demo")):
            ...
    """

    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    async def get(self, key: tuple[str, str]) -> asyncio.Lock:
        """Get or create the lock for an instance."""
        # Fast path: lock already exists
        if key in self._locks:
            return self._locks[key]

        async with self._registry_lock:
            # Double-check after acquiring the registry lock
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
                logger.debug(f"Created instance lock for {key[0]}/{key[1]}")
            return self._locks[key]

    @asynccontextmanager
    async def hold(self, key: tuple[str, str]):
        lock = await self.get(key)
        async with lock:
            yield

    def locked(self, key: tuple[str, str]) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def discard(self, key: tuple[str, str]) -> None:
        """Drop the lock of a deleted instance unless someone still holds it."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
