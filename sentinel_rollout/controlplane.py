"""Control plane composition and operator operations."""

import logging
from datetime import datetime
from typing import Callable, Optional

from .canary import CanaryAnalysisEngine
from .config import Settings, get_settings
from .errors import WorkloadNotFoundError
from .events import EventBus
from .executor import ExecutionBackend, ExecutionClient, InMemoryBackend
from .leases import KeyLeases
from .metrics import MetricsProvider, PrometheusMetricsProvider
from .models import DesiredSpec, RolloutState, RolloutStatus
from .publisher import RolloutEventPublisher
from .reconciler import (
    WORKLOAD_KIND,
    Controller,
    ReconcileResult,
    ReconcilerRegistry,
    ResourceKey,
    ResultKind,
)
from .revisions import RevisionManager
from .rollback import PREVIOUS, RollbackManager, RollbackRecord
from .rollout import RolloutOrchestrator
from .store import StateStore, create_store
from .traffic import InMemoryTrafficRouter, TrafficRouter
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class ControlPlane:
    """
    Wires the store, controller, orchestrator, canary engine and rollback
    manager together and exposes the operator operations.
    """

    def __init__(
        self,
        store: StateStore,
        backend: ExecutionBackend,
        provider: MetricsProvider,
        router: Optional[TrafficRouter] = None,
        settings: Optional[Settings] = None,
        publisher: Optional[RolloutEventPublisher] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize control plane.

        Args:
            store: State store client; its event bus is shared by every component
            backend: Execution backend running replica instances
            provider: Metrics provider for canary analysis
            router: Traffic router for canary weights
            settings: Application settings
            publisher: Optional Kafka publisher of rollout events
            clock: Time source for deadlines and timestamps
        """
        self.settings = settings or get_settings()
        if store.bus is None:
            store.bus = EventBus()

        self.store = store
        self.bus = store.bus
        self.backend = backend
        self.provider = provider
        self.router = router or InMemoryTrafficRouter()
        self.publisher = publisher

        self.leases = KeyLeases()
        self.queue = WorkQueue(
            backoff_base=self.settings.backoff_base_seconds,
            backoff_max=self.settings.backoff_max_seconds,
        )
        self.execution = ExecutionClient(
            backend,
            timeout_seconds=self.settings.collaborator_timeout_seconds,
            max_attempts=self.settings.collaborator_max_attempts,
        )
        self.revisions = RevisionManager(store, clock=clock)
        self.orchestrator = RolloutOrchestrator(
            store,
            self.revisions,
            self.execution,
            router=self.router,
            bus=self.bus,
            clock=clock,
            instance_failure_threshold=self.settings.instance_failure_threshold,
            tick_seconds=self.settings.rollout_tick_seconds,
        )

        self.registry = ReconcilerRegistry()
        self.registry.register(WORKLOAD_KIND, self.orchestrator.reconcile, store.list_workloads)
        self.controller = Controller(
            self.registry,
            self.queue,
            self.leases,
            bus=self.bus,
            workers=self.settings.workers,
            resync_interval=self.settings.resync_interval_seconds,
        )

        self.canary = CanaryAnalysisEngine(
            store,
            self.orchestrator,
            provider,
            self.leases,
            bus=self.bus,
            enqueue=self.controller.enqueue,
            clock=clock,
        )
        self.rollbacks = RollbackManager(
            store,
            self.revisions,
            self.orchestrator,
            self.leases,
            bus=self.bus,
            enqueue=self.controller.enqueue,
        )

    @classmethod
    async def from_settings(cls, settings: Optional[Settings] = None) -> "ControlPlane":
        """
        Build a control plane from configuration.

        Args:
            settings: Application settings, defaults to the environment

        Returns:
            Control plane ready to start
        """
        settings = settings or get_settings()
        bus = EventBus()
        store = await create_store(settings.database_url, bus)

        if settings.execution_backend == "kubernetes":
            from .kubernetes_backend import KubernetesPodBackend, load_core_v1

            backend: ExecutionBackend = KubernetesPodBackend(
                load_core_v1(settings.kubeconfig_path), settings.kubernetes_namespace
            )
        elif settings.execution_backend == "memory":
            backend = InMemoryBackend()
        else:
            raise ValueError(f"Unknown execution backend {settings.execution_backend!r}")

        provider = PrometheusMetricsProvider(
            settings.prometheus_url, timeout_seconds=settings.metrics_query_timeout_seconds
        )
        publisher = RolloutEventPublisher(settings) if settings.kafka_enabled else None

        return cls(store, backend, provider, settings=settings, publisher=publisher)

    async def start(self) -> None:
        """Start reconciliation, canary timers and event publishing."""
        if self.publisher is not None:
            await self.publisher.start(self.bus)
        await self.controller.start()
        await self.canary.start()
        logger.info("Control plane started")

    async def stop(self) -> None:
        """Stop every loop and flush the store."""
        await self.canary.stop_all()
        await self.controller.stop()
        if self.publisher is not None:
            await self.publisher.stop()
        await self.store.close()
        logger.info("Control plane stopped")

    # Operations

    async def put_spec(
        self, spec: DesiredSpec, manager: str = "operator", force: bool = False
    ) -> DesiredSpec:
        """
        Create or update a workload's desired spec.

        Raises:
            OwnershipConflictError: If a changed field is owned by another manager
        """
        stored = await self.store.put_spec(spec, manager=manager, force=force)
        self.controller.enqueue(spec.workload)
        return stored

    async def delete_spec(self, workload: str) -> None:
        """
        Delete a workload's desired spec; its instances are torn down.

        Raises:
            WorkloadNotFoundError: If the workload has no spec
        """
        if not await self.store.delete_spec(workload):
            raise WorkloadNotFoundError(f"Workload {workload} not found")
        self.canary.stop_timer(workload)
        self.controller.enqueue(workload)

    async def status(self, workload: str) -> RolloutStatus:
        """
        Report the rollout status of a workload.

        Raises:
            WorkloadNotFoundError: If the workload has no spec
        """
        spec = await self.store.get_spec(workload)
        if spec is None:
            raise WorkloadNotFoundError(f"Workload {workload} not found")

        state = await self.store.get_rollout_state(workload) or RolloutState(workload=workload)
        revisions = await self.revisions.list_revisions(workload)
        sequences = {r.id: r.sequence for r in revisions}

        message = state.message
        last = self.controller.last_results.get(str(ResourceKey(WORKLOAD_KIND, workload)))
        if last is not None and last.kind == ResultKind.REQUEUE and last.after is None:
            message = last.reason

        return RolloutStatus(
            workload=workload,
            phase=state.phase,
            reason=state.reason,
            message=message,
            current_revision=sequences.get(state.current_revision_id),
            target_revision=sequences.get(state.target_revision_id),
            desired_replicas=spec.replicas,
            counters=state.counters,
            traffic_weight=state.traffic_weight,
            canary_step=state.canary.step_index if state.canary else None,
            canary_failures=state.canary.consecutive_failures if state.canary else None,
            conditions=state.conditions,
            revisions=[r.sequence for r in revisions],
        )

    async def pause(self, workload: str) -> RolloutStatus:
        async with self.leases.hold(workload):
            await self.orchestrator.pause(workload)
        self.controller.enqueue(workload)
        return await self.status(workload)

    async def resume(self, workload: str) -> RolloutStatus:
        async with self.leases.hold(workload):
            await self.orchestrator.resume(workload)
        self.controller.enqueue(workload)
        return await self.status(workload)

    async def promote(self, workload: str) -> RolloutStatus:
        async with self.leases.hold(workload):
            await self.orchestrator.promote(workload)
        self.controller.enqueue(workload)
        return await self.status(workload)

    async def rollback(self, workload: str, ref: str = PREVIOUS) -> RollbackRecord:
        """
        Roll a workload back to ``ref`` ("previous", an id or a sequence number).

        Raises:
            WorkloadNotFoundError: If the workload has no spec
            InvalidRevisionError: If ``ref`` does not resolve to a usable revision
        """
        return await self.rollbacks.rollback_to(workload, ref)

    async def reconcile_now(self, workload: str) -> ReconcileResult:
        """Reconcile a workload immediately on the caller's task."""
        return await self.controller.process(str(ResourceKey(WORKLOAD_KIND, workload)))
