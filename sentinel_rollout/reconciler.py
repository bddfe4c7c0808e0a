"""Level-triggered reconciliation core."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, NamedTuple, Optional

from . import instrumentation
from .errors import TransientError, UnknownKindError
from .events import EventBus, ResourceType, WatchEvent
from .leases import KeyLeases
from .models import Action
from .workqueue import QueueShutDown, WorkQueue

logger = logging.getLogger(__name__)

WORKLOAD_KIND = "workload"


class ResultKind(str, Enum):
    """Reconcile outcome."""

    DONE = "done"
    REQUEUE = "requeue"
    ERROR = "error"


@dataclass
class ReconcileResult:
    """
    Outcome of one reconcile.

    ``after`` is the requeue delay; a requeue without ``after`` uses the
    key's exponential failure backoff.
    """

    kind: ResultKind
    after: Optional[float] = None
    reason: str = ""
    actions: list[Action] = field(default_factory=list)

    @classmethod
    def done(cls, reason: str = "", actions: Optional[list[Action]] = None) -> "ReconcileResult":
        return cls(kind=ResultKind.DONE, reason=reason, actions=actions or [])

    @classmethod
    def requeue(
        cls,
        reason: str,
        after: Optional[float] = None,
        actions: Optional[list[Action]] = None,
    ) -> "ReconcileResult":
        return cls(kind=ResultKind.REQUEUE, after=after, reason=reason, actions=actions or [])

    @classmethod
    def error(cls, reason: str, actions: Optional[list[Action]] = None) -> "ReconcileResult":
        return cls(kind=ResultKind.ERROR, reason=reason, actions=actions or [])


class ResourceKey(NamedTuple):
    """Queue key: resource kind tag plus name."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "ResourceKey":
        kind, sep, name = key.partition("/")
        if not sep or not name:
            raise ValueError(f"Malformed resource key {key!r}")
        return cls(kind, name)


ReconcileFunc = Callable[[str], Awaitable[ReconcileResult]]
KeyLister = Callable[[], Awaitable[list[str]]]


@dataclass
class _Registration:
    reconcile: ReconcileFunc
    lister: Optional[KeyLister]


class ReconcilerRegistry:
    """
    Dispatch table from resource kind to reconciler.

    Filled at startup and frozen before the controller starts, after which
    registrations are rejected.
    """

    def __init__(self):
        self._entries: dict[str, _Registration] = {}
        self._frozen = False

    def register(
        self, kind: str, reconcile: ReconcileFunc, lister: Optional[KeyLister] = None
    ) -> None:
        """
        Register the reconciler for a kind.

        Args:
            kind: Resource kind tag
            reconcile: Coroutine function taking a resource name
            lister: Coroutine function listing every name, used by resync
        """
        if self._frozen:
            raise RuntimeError("Reconciler registry is frozen")
        if kind in self._entries:
            raise ValueError(f"Reconciler for kind {kind!r} already registered")
        self._entries[kind] = _Registration(reconcile=reconcile, lister=lister)

    def freeze(self) -> None:
        self._frozen = True

    def get(self, kind: str) -> ReconcileFunc:
        entry = self._entries.get(kind)
        if entry is None:
            raise UnknownKindError(f"No reconciler registered for kind {kind!r}")
        return entry.reconcile

    def listers(self) -> dict[str, KeyLister]:
        return {k: e.lister for k, e in self._entries.items() if e.lister is not None}

    def kinds(self) -> list[str]:
        return list(self._entries)


class Controller:
    """
    Worker pool draining the reconcile work queue.

    Implements the level-triggered loop:
    1. Watch events and a periodic full resync enqueue keys
    2. A worker takes a key, holds its lease and reconciles it
    3. The result decides whether and when the key comes back
    """

    def __init__(
        self,
        registry: ReconcilerRegistry,
        queue: WorkQueue,
        leases: KeyLeases,
        bus: Optional[EventBus] = None,
        workers: int = 4,
        resync_interval: float = 30.0,
    ):
        """
        Initialize controller.

        Args:
            registry: Kind to reconciler dispatch table
            queue: Work queue shared with every producer
            leases: Per-workload leases
            bus: Event bus to subscribe to
            workers: Number of concurrent workers
            resync_interval: Seconds between full resyncs
        """
        self.registry = registry
        self.queue = queue
        self.leases = leases
        self.bus = bus
        self.workers = workers
        self.resync_interval = resync_interval

        self.last_results: dict[str, ReconcileResult] = {}
        self._running = False
        self._tasks: list[asyncio.Task] = []

    def enqueue(self, name: str, kind: str = WORKLOAD_KIND, delay: float = 0.0) -> None:
        """Enqueue a resource for reconciliation."""
        self.queue.add(str(ResourceKey(kind, name)), delay)
        instrumentation.workqueue_depth.set(len(self.queue))

    def _handle_event(self, event: WatchEvent) -> None:
        if not self._running:
            return
        logger.debug(
            f"Received {event.event_type.value} event for {event.resource_type.value} "
            f"{event.key}"
        )
        self.enqueue(event.workload)

    async def resync(self) -> int:
        """
        Enqueue every known key.

        Returns:
            Number of keys enqueued
        """
        count = 0
        for kind, lister in self.registry.listers().items():
            for name in await lister():
                self.enqueue(name, kind)
                count += 1
        return count

    async def process(self, key: str) -> ReconcileResult:
        """
        Reconcile one key and schedule its follow-up.

        Args:
            key: Resource key as produced by ``ResourceKey``

        Returns:
            Reconcile result
        """
        resource = ResourceKey.parse(key)
        reconcile = self.registry.get(resource.kind)
        started = time.perf_counter()

        try:
            async with self.leases.hold(resource.name):
                result = await reconcile(resource.name)
        except TransientError as e:
            logger.warning(f"Transient error reconciling {key}: {e}")
            result = ReconcileResult.requeue(reason=str(e))
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            result = ReconcileResult.error(reason=f"Unexpected error: {e}")

        instrumentation.reconcile_duration_seconds.labels(kind=resource.kind).observe(
            time.perf_counter() - started
        )
        instrumentation.reconcile_total.labels(
            kind=resource.kind, result=result.kind.value
        ).inc()

        self._schedule(key, result)
        self.last_results[key] = result
        return result

    def _schedule(self, key: str, result: ReconcileResult) -> None:
        if result.kind == ResultKind.REQUEUE:
            if result.after is None:
                delay = self.queue.add_rate_limited(key)
                logger.info(f"Requeue {key} in {delay:.1f}s: {result.reason}")
            else:
                self.queue.forget(key)
                self.queue.add(key, result.after)
                logger.debug(f"Requeue {key} in {result.after:.1f}s: {result.reason}")
        elif result.kind == ResultKind.ERROR:
            # Left for the next resync rather than retried immediately.
            self.queue.forget(key)
            logger.error(f"Reconcile of {key} failed: {result.reason}")
        else:
            self.queue.forget(key)

    async def _worker(self, index: int) -> None:
        logger.debug(f"Reconcile worker {index} started")
        while self._running:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                break
            try:
                await self.process(key)
            except UnknownKindError as e:
                logger.error(f"Dropping {key}: {e}")
            finally:
                self.queue.done(key)
                instrumentation.workqueue_depth.set(len(self.queue))

    async def _periodic_resync(self) -> None:
        """Run periodic resync for all resources."""
        while self._running:
            try:
                await asyncio.sleep(self.resync_interval)
                count = await self.resync()
                logger.debug(f"Periodic resync enqueued {count} keys")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic resync: {e}", exc_info=True)

    async def start(self) -> None:
        """Start workers, the resync loop and event subscriptions."""
        if self._running:
            logger.warning("Controller already running")
            return

        self._running = True
        self.registry.freeze()

        if self.bus is not None:
            self.bus.register_handler(ResourceType.SPEC, self._handle_event)
            self.bus.register_handler(ResourceType.INSTANCE, self._handle_event)

        await self.resync()

        for index in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(index)))
        self._tasks.append(asyncio.create_task(self._periodic_resync()))

        logger.info(
            f"Controller started with {self.workers} workers "
            f"(resync every {self.resync_interval:.0f}s)"
        )

    async def stop(self) -> None:
        """Stop workers and the resync loop."""
        logger.info("Stopping controller")
        self._running = False
        self.queue.shut_down()

        if self.bus is not None:
            self.bus.unregister_handler(ResourceType.SPEC, self._handle_event)
            self.bus.unregister_handler(ResourceType.INSTANCE, self._handle_event)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
