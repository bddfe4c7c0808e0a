"""Per-workload leases serializing mutations of a rollout state."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyLeases:
    """
    One asyncio lock per workload key.

    The reconcile workers and the canary analysis timers both hold the
    workload lease while they read-modify-write its RolloutState.
    """

    def __init__(self):
        """Initialize lease table."""
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lease for a key for the duration of the block."""
        async with self._lock(key):
            yield

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def discard(self, key: str) -> None:
        """Drop an idle lease, e.g. after the workload was deleted."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
