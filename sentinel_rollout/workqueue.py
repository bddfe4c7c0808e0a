"""Delay-aware, coalescing work queue for reconcile keys."""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by ``get`` once the queue is shut down."""


class WorkQueue:
    """
    Work queue keyed by resource key with delay-aware scheduling.

    Items live in a min-heap keyed by next eligible time. The queue holds
    each key at most once: enqueuing a key that is already waiting keeps the
    earlier eligible time. A key handed out by ``get`` is not handed out
    again until ``done`` is called for it; adds that arrive in between are
    remembered and applied on ``done``.

    Failure backoff is exponential per key (``base * 2**(n-1)``, capped) and
    is reset by ``forget``.
    """

    def __init__(
        self,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize work queue.

        Args:
            backoff_base: First retry delay in seconds
            backoff_max: Retry delay cap in seconds
            clock: Monotonic time source
        """
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock

        self._heap: list[tuple[float, int, str]] = []
        self._queued: dict[str, tuple[float, int]] = {}
        self._processing: set[str] = set()
        self._deferred: dict[str, float] = {}
        self._failures: dict[str, int] = {}
        self._counter = itertools.count()
        self._wakeup = asyncio.Event()
        self._shutdown = False

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def add(self, key: str, delay: float = 0.0) -> None:
        """
        Enqueue a key, eligible after ``delay`` seconds.

        Args:
            key: Resource key
            delay: Seconds until the key may be handed out
        """
        if self._shutdown:
            return

        when = self._clock() + max(0.0, delay)

        if key in self._processing:
            previous = self._deferred.get(key)
            self._deferred[key] = when if previous is None else min(previous, when)
            return

        queued = self._queued.get(key)
        if queued is not None and queued[0] <= when:
            return

        self._push(key, when)

    def _push(self, key: str, when: float) -> None:
        token = next(self._counter)
        self._queued[key] = (when, token)
        heapq.heappush(self._heap, (when, token, key))
        self._wakeup.set()

    def add_rate_limited(self, key: str) -> float:
        """
        Enqueue a key after its exponential backoff delay.

        Returns:
            Delay applied in seconds
        """
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = min(self.backoff_base * (2 ** (failures - 1)), self.backoff_max)
        self.add(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the failure backoff of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def _pop_ready(self) -> Optional[str]:
        now = self._clock()
        while self._heap:
            when, token, key = self._heap[0]
            queued = self._queued.get(key)
            if queued is None or queued[1] != token:
                heapq.heappop(self._heap)
                continue
            if when > now:
                return None
            heapq.heappop(self._heap)
            del self._queued[key]
            self._processing.add(key)
            return key
        return None

    def _next_delay(self) -> Optional[float]:
        while self._heap:
            when, token, key = self._heap[0]
            queued = self._queued.get(key)
            if queued is None or queued[1] != token:
                heapq.heappop(self._heap)
                continue
            return max(0.0, when - self._clock())
        return None

    async def get(self) -> str:
        """
        Wait for the next eligible key.

        Returns:
            Key to process; the caller must call ``done`` for it

        Raises:
            QueueShutDown: If the queue was shut down
        """
        while True:
            self._wakeup.clear()
            if self._shutdown:
                raise QueueShutDown()

            key = self._pop_ready()
            if key is not None:
                return key

            timeout = self._next_delay()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def done(self, key: str) -> None:
        """
        Mark a key as processed.

        Adds received while the key was processing are applied now.
        """
        self._processing.discard(key)
        when = self._deferred.pop(key, None)
        if when is not None and not self._shutdown:
            queued = self._queued.get(key)
            if queued is None or when < queued[0]:
                self._push(key, when)

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def shut_down(self) -> None:
        """Stop handing out keys and wake every waiter."""
        self._shutdown = True
        self._wakeup.set()
        logger.debug("Work queue shut down")
