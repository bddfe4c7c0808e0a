"""Rollout orchestration: bounded scaling between revisions and the phase state machine."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from . import instrumentation
from .errors import (
    CollaboratorTimeoutError,
    InvariantViolationError,
    NoActiveRolloutError,
    RevisionWriteError,
    RolloutError,
    TransientError,
    WorkloadNotFoundError,
)
from .events import EventBus, EventType, ResourceType, WatchEvent
from .executor import ExecutionClient
from .models import (
    ACTIVE_PHASES,
    HALTED_PHASES,
    SETTLED_PHASES,
    Action,
    ActionKind,
    CanaryDecision,
    CanaryRun,
    DesiredSpec,
    HealthSignal,
    InstancePhase,
    ReplicaInstance,
    Revision,
    RolloutCounters,
    RolloutPhase,
    RolloutState,
    StrategyKind,
)
from .reconciler import ReconcileResult
from .revisions import RevisionManager
from .store import StateStore
from .traffic import TrafficRouter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedAction:
    """Scaling step produced by ``plan_scaling``."""

    kind: ActionKind
    revision_id: str
    instance_id: Optional[str] = None
    counted_ready: bool = False


_DELETE_RANK = {
    InstancePhase.TERMINATING: 0,
    InstancePhase.FAILED: 1,
    InstancePhase.PENDING: 2,
    InstancePhase.READY: 3,
}


def _deletion_order(instance: ReplicaInstance) -> tuple:
    # Unhealthy before ready, newest first within a phase.
    return (_DELETE_RANK[instance.phase], -instance.created_at.timestamp(), instance.id)


def canary_replicas(desired: int, weight: int) -> int:
    """Instances the canary revision gets for a traffic weight, rounded up."""
    if weight <= 0 or desired <= 0:
        return 0
    return min(desired, -(-desired * weight // 100))


def plan_scaling(
    instances: list[ReplicaInstance],
    targets: dict[str, int],
    desired: int,
    max_surge: int,
    max_unavailable: int,
) -> list[PlannedAction]:
    """
    Plan an ordered batch of creates and deletes towards per-revision targets.

    Terminating and failed instances are always removed first; they do not
    count as ready. The remaining work alternates between creating instances
    of under-target revisions while the total stays within
    ``desired + max_surge`` and deleting instances of over-target revisions
    while ready instances stay at or above ``desired - max_unavailable``.
    Instances created within the batch are not ready yet, so the batch stops
    at the point where further progress needs new instances to turn ready.

    Args:
        instances: Current instance records of the workload
        targets: Revision id to instance count, in creation preference order;
            revisions absent from the mapping target zero
        desired: Desired replica count
        max_surge: Resolved surge bound
        max_unavailable: Resolved unavailability bound

    Returns:
        Actions in execution order
    """
    max_total = desired + max_surge
    min_ready = desired - max_unavailable

    actions: list[PlannedAction] = []
    total = len(instances)
    ready = sum(1 for i in instances if i.is_ready)
    counts: dict[str, int] = {}
    candidates: dict[str, list[ReplicaInstance]] = {}
    first_seen: dict[str, datetime] = {}

    for instance in sorted(instances, key=_deletion_order):
        if instance.phase in (InstancePhase.TERMINATING, InstancePhase.FAILED):
            actions.append(
                PlannedAction(ActionKind.DELETE, instance.revision_id, instance.id)
            )
            total -= 1
            continue
        counts[instance.revision_id] = counts.get(instance.revision_id, 0) + 1
        candidates.setdefault(instance.revision_id, []).append(instance)
        seen = first_seen.get(instance.revision_id)
        if seen is None or instance.created_at < seen:
            first_seen[instance.revision_id] = instance.created_at

    # Retired revisions oldest first, then target revisions that are over target.
    retired = sorted(
        (r for r in candidates if r not in targets), key=lambda r: (first_seen[r], r)
    )
    delete_order = retired + [r for r in reversed(list(targets)) if r in candidates]

    progressed = True
    while progressed:
        progressed = False

        for revision_id, want in targets.items():
            room = max_total - total
            missing = want - counts.get(revision_id, 0)
            for _ in range(max(0, min(room, missing))):
                actions.append(PlannedAction(ActionKind.CREATE, revision_id))
                counts[revision_id] = counts.get(revision_id, 0) + 1
                total += 1
                progressed = True

        for revision_id in delete_order:
            pool = candidates[revision_id]
            excess = counts.get(revision_id, 0) - targets.get(revision_id, 0)
            while excess > 0 and pool:
                instance = pool[0]
                if instance.is_ready and ready - 1 < min_ready:
                    break
                pool.pop(0)
                if instance.is_ready:
                    ready -= 1
                actions.append(
                    PlannedAction(
                        ActionKind.DELETE,
                        revision_id,
                        instance.id,
                        counted_ready=instance.is_ready,
                    )
                )
                counts[revision_id] -= 1
                total -= 1
                excess -= 1
                progressed = True

    return actions


def verify_plan(
    instances: list[ReplicaInstance],
    actions: list[PlannedAction],
    max_total: int,
    min_ready: int,
) -> None:
    """
    Replay a plan against the current instances and check the bounds.

    A create may never push the total above ``max_total`` and deleting a
    ready instance may never drop ready instances below ``min_ready``.

    Raises:
        InvariantViolationError: If any prefix of the plan breaks a bound
    """
    known = {i.id for i in instances}
    total = len(instances)
    ready = sum(1 for i in instances if i.is_ready)
    deleted: set[str] = set()

    for index, action in enumerate(actions):
        if action.kind == ActionKind.CREATE:
            total += 1
            if total > max_total:
                raise InvariantViolationError(
                    f"Step {index} would raise instances to {total}, above {max_total}"
                )
            continue

        if action.instance_id not in known or action.instance_id in deleted:
            raise InvariantViolationError(
                f"Step {index} deletes unknown instance {action.instance_id}"
            )
        deleted.add(action.instance_id)
        total -= 1
        if action.counted_ready:
            ready -= 1
            if ready < min_ready:
                raise InvariantViolationError(
                    f"Step {index} would drop ready instances to {ready}, below {min_ready}"
                )


@dataclass
class _Tick:
    """Working set of one reconcile or control operation."""

    spec: DesiredSpec
    state: RolloutState
    instances: list[ReplicaInstance] = field(default_factory=list)
    revisions: dict[str, Revision] = field(default_factory=dict)
    actions: list[Action] = field(default_factory=list)
    transitions: list[tuple[RolloutPhase, RolloutPhase]] = field(default_factory=list)
    route: Optional[tuple[str, int]] = None
    completed: bool = False
    baseline: Optional[dict[str, Any]] = None

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for instance in self.instances:
            counts[instance.revision_id] = counts.get(instance.revision_id, 0) + 1
        return counts

    def ready_of(self, revision_id: Optional[str]) -> int:
        return sum(1 for i in self.instances if i.revision_id == revision_id and i.is_ready)


def _fingerprint(state: RolloutState) -> dict[str, Any]:
    return state.model_dump(mode="json", exclude={"updated_at", "version"})


class RolloutOrchestrator:
    """
    Moves a workload's instances from its current revision to its target.

    Each reconcile observes instance health, plans a bounded batch of
    creates and deletes, verifies the plan against the surge and
    unavailability bounds, executes it and advances the phase state machine.
    Control operations (pause, resume, promote, rollback) and canary
    analysis decisions run through the same transitions. Callers hold the
    workload lease.
    """

    def __init__(
        self,
        store: StateStore,
        revisions: RevisionManager,
        execution: ExecutionClient,
        router: Optional[TrafficRouter] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        instance_failure_threshold: int = 3,
        tick_seconds: float = 5.0,
    ):
        """
        Initialize rollout orchestrator.

        Args:
            store: State store client
            revisions: Revision manager
            execution: Execution collaborator client
            router: Traffic router for canary weights
            bus: Event bus receiving rollout transitions
            clock: Time source for deadlines and timestamps
            instance_failure_threshold: Consecutive NotReady signals after
                which a previously ready instance is Failed
            tick_seconds: Requeue delay while a rollout is in flight
        """
        self.store = store
        self.revisions = revisions
        self.execution = execution
        self.router = router
        self.bus = bus
        self.clock = clock
        self.instance_failure_threshold = instance_failure_threshold
        self.tick_seconds = tick_seconds

    # Reconcile

    async def reconcile(self, workload: str) -> ReconcileResult:
        """
        Reconcile one workload.

        Args:
            workload: Workload key

        Returns:
            Done once settled, Requeue while in flight or after a transient
            failure, Error after an invariant violation
        """
        try:
            return await self._reconcile(workload)
        except InvariantViolationError as e:
            logger.error(f"Invariant violation for {workload}: {e}")
            await self._record_problem(workload, str(e), degraded=True)
            return ReconcileResult.error(reason=str(e))
        except RevisionWriteError as e:
            logger.error(f"Revision write failed for {workload}: {e}")
            await self._record_problem(workload, str(e))
            return ReconcileResult.requeue(reason=str(e))
        except TransientError as e:
            logger.warning(f"Transient error reconciling {workload}: {e}")
            await self._record_problem(workload, f"Requeued after error: {e}")
            return ReconcileResult.requeue(reason=str(e))

    async def _reconcile(self, workload: str) -> ReconcileResult:
        spec = await self.store.get_spec(workload)
        state = await self.store.get_rollout_state(workload)
        instances = await self.store.list_instances(workload)

        if spec is None:
            if state is None and not instances:
                return ReconcileResult.done(reason="Workload not found")
            return await self._teardown(workload, state, instances)

        state = state or RolloutState(workload=workload)
        tick = _Tick(
            spec=spec, state=state, instances=instances, baseline=_fingerprint(state)
        )

        revision = await self.revisions.ensure_revision(spec)
        tick.revisions[revision.id] = revision
        self._sync_target(tick, revision)

        await self._observe(tick)

        if state.phase in ACTIVE_PHASES and self._deadline_exceeded(tick):
            self._end_canary(tick)
            self._transition(
                tick,
                RolloutPhase.FAILED,
                "ProgressDeadlineExceeded",
                f"Rollout to {state.target_revision_id} did not complete within "
                f"{spec.policy.progress_deadline_seconds}s",
            )
        elif state.phase not in (RolloutPhase.PAUSED, RolloutPhase.FAILED):
            await self._scale(tick)

        self._update_counters(tick)
        self._advance(tick)

        degraded = state.get_condition("Degraded")
        if degraded is not None and degraded.status:
            state.set_condition("Degraded", False, "Reconciled")

        if tick.completed:
            await self._prune(tick)

        await self._commit(tick)
        return self._result(tick)

    def _sync_target(self, tick: _Tick, revision: Revision) -> None:
        """Start, retarget or hold a rollout according to the spec's template."""
        state = tick.state
        heading_to = state.target_revision_id or state.current_revision_id

        if heading_to is None:
            self._start(
                tick, revision, "NewWorkload", f"Rolling out revision {revision.sequence}"
            )
            return
        if revision.id == heading_to:
            return

        paused = state.phase == RolloutPhase.PAUSED
        self._start(
            tick,
            revision,
            "TemplateChanged",
            f"Rolling out revision {revision.sequence}",
        )
        if paused:
            # Retargeted, but stays paused until resumed.
            state.paused_from = RolloutPhase.PROGRESSING
            self._transition(
                tick,
                RolloutPhase.PAUSED,
                "PausedByOperator",
                f"Template changed to revision {revision.sequence} while paused",
            )

    def _start(self, tick: _Tick, revision: Revision, reason: str, message: str) -> None:
        """Enter Progressing towards a revision."""
        state = tick.state
        policy = tick.spec.policy

        state.target_revision_id = revision.id
        state.progressing_since = self.clock()
        state.paused_from = None
        state.canary = None
        state.traffic_weight = 0

        if (
            policy.canary is not None
            and policy.strategy == StrategyKind.CANARY
            and state.current_revision_id is not None
            and state.current_revision_id != revision.id
        ):
            state.canary = CanaryRun(
                weight=policy.canary.step_weight,
                metrics=list(policy.canary.metrics),
                started_at=self.clock(),
            )
            state.traffic_weight = policy.canary.step_weight
            tick.route = (revision.id, policy.canary.step_weight)

        tick.actions.append(
            Action(
                kind=ActionKind.MARK_REVISION,
                workload=state.workload,
                revision_id=revision.id,
            )
        )
        self._transition(tick, RolloutPhase.PROGRESSING, reason, message)

    def _transition(
        self, tick: _Tick, phase: RolloutPhase, reason: str, message: str = ""
    ) -> None:
        state = tick.state
        previous = state.phase
        state.phase = phase
        state.reason = reason
        state.message = message
        tick.transitions.append((previous, phase))

        if previous != phase:
            instrumentation.phase_transitions_total.labels(
                from_phase=previous.value, to_phase=phase.value
            ).inc()
        logger.info(
            f"Rollout {state.workload}: {previous.value} -> {phase.value} ({reason})"
        )

    def _end_canary(self, tick: _Tick) -> None:
        """Drop the canary run and route all traffic back to the stable revision."""
        state = tick.state
        if state.canary is not None and state.target_revision_id is not None:
            tick.route = (state.target_revision_id, 0)
        state.canary = None
        state.traffic_weight = 0

    def _deadline_exceeded(self, tick: _Tick) -> bool:
        since = tick.state.progressing_since
        if since is None:
            return False
        deadline = since + timedelta(seconds=tick.spec.policy.progress_deadline_seconds)
        return self.clock() > deadline

    # Observation

    async def _observe(self, tick: _Tick) -> None:
        """Refresh the health of every acknowledged instance."""
        for instance in tick.instances:
            if instance.phase == InstancePhase.TERMINATING or not instance.acknowledged:
                continue
            try:
                signal = await self.execution.get_instance_health(instance.id)
            except CollaboratorTimeoutError as e:
                logger.warning(f"Health of {instance.id} unknown: {e}")
                signal = HealthSignal.UNKNOWN

            if self._apply_health(instance, signal):
                await self.store.put_instance(instance)

    def _apply_health(self, instance: ReplicaInstance, signal: HealthSignal) -> bool:
        """
        Fold a health signal into an instance record.

        Returns:
            True if the record changed
        """
        before = (instance.phase, instance.health, instance.consecutive_failures)
        instance.health = signal

        if signal == HealthSignal.READY:
            if instance.phase != InstancePhase.FAILED:
                instance.phase = InstancePhase.READY
                instance.consecutive_failures = 0
        elif signal == HealthSignal.NOT_READY:
            # Startup NotReady is expected; only count once it has served.
            if instance.phase == InstancePhase.READY or instance.consecutive_failures > 0:
                instance.consecutive_failures += 1
                if instance.consecutive_failures >= self.instance_failure_threshold:
                    if instance.phase != InstancePhase.FAILED:
                        logger.warning(
                            f"Instance {instance.id} failed after "
                            f"{instance.consecutive_failures} NotReady signals"
                        )
                    instance.phase = InstancePhase.FAILED
                elif instance.phase != InstancePhase.FAILED:
                    instance.phase = InstancePhase.PENDING

        return before != (instance.phase, instance.health, instance.consecutive_failures)

    # Scaling

    def _targets(self, tick: _Tick) -> dict[str, int]:
        """Per-revision instance targets for the current phase."""
        state = tick.state
        desired = tick.spec.replicas

        if state.phase in SETTLED_PHASES or state.phase == RolloutPhase.ROLLED_BACK:
            if state.current_revision_id is None:
                return {}
            return {state.current_revision_id: desired}

        target = state.target_revision_id
        if target is None:
            return {}
        if state.phase == RolloutPhase.PROMOTING or state.canary is None:
            return {target: desired}

        canary = canary_replicas(desired, state.canary.weight)
        targets = {target: canary}
        if state.current_revision_id is not None:
            targets[state.current_revision_id] = desired - canary
        return targets

    async def _scale(self, tick: _Tick) -> None:
        spec = tick.spec
        desired = spec.replicas
        surge, unavailable = spec.policy.resolve_bounds(desired)

        await self._retry_unacknowledged(tick)

        plan = plan_scaling(tick.instances, self._targets(tick), desired, surge, unavailable)
        if not plan:
            return
        verify_plan(tick.instances, plan, desired + surge, desired - unavailable)
        logger.debug(f"Executing {len(plan)} scaling actions for {spec.workload}")
        await self._execute(tick, plan)

    async def _retry_unacknowledged(self, tick: _Tick) -> None:
        """Re-issue creates whose acknowledgement was never recorded."""
        for instance in tick.instances:
            if instance.acknowledged or instance.phase != InstancePhase.PENDING:
                continue
            revision = await self._revision(tick, instance.revision_id)
            await self.execution.create_instance(revision, instance.id)
            instance.acknowledged = True
            await self.store.put_instance(instance)
            tick.actions.append(
                Action(
                    kind=ActionKind.CREATE,
                    workload=instance.workload,
                    revision_id=instance.revision_id,
                    instance_id=instance.id,
                )
            )

    async def _execute(self, tick: _Tick, plan: list[PlannedAction]) -> None:
        """
        Apply a verified plan in order.

        Every action is recorded in the store before the collaborator is
        called, so an interrupted batch is finished by a later reconcile.
        """
        workload = tick.spec.workload
        by_id = {i.id: i for i in tick.instances}

        for planned in plan:
            if planned.kind == ActionKind.CREATE:
                revision = await self._revision(tick, planned.revision_id)
                instance = ReplicaInstance(
                    id=f"{revision.id}-{uuid.uuid4().hex[:5]}",
                    workload=workload,
                    revision_id=revision.id,
                    created_at=self.clock(),
                )
                await self.store.put_instance(instance)
                tick.instances.append(instance)
                await self.execution.create_instance(revision, instance.id)
                instance.acknowledged = True
                await self.store.put_instance(instance)
                instance_id = instance.id
            else:
                instance = by_id[planned.instance_id]
                if instance.phase != InstancePhase.TERMINATING:
                    instance.phase = InstancePhase.TERMINATING
                    await self.store.put_instance(instance)
                await self.execution.delete_instance(instance.id)
                await self.store.delete_instance(workload, instance.id)
                tick.instances.remove(instance)
                instance_id = instance.id

            tick.actions.append(
                Action(
                    kind=planned.kind,
                    workload=workload,
                    revision_id=planned.revision_id,
                    instance_id=instance_id,
                )
            )
            instrumentation.reconcile_actions_total.labels(action=planned.kind.value).inc()

    async def _revision(self, tick: _Tick, revision_id: str) -> Revision:
        revision = tick.revisions.get(revision_id)
        if revision is None:
            revision = await self.revisions.get(tick.spec.workload, revision_id)
            if revision is None:
                raise InvariantViolationError(f"Revision {revision_id} does not exist")
            tick.revisions[revision_id] = revision
        return revision

    def _update_counters(self, tick: _Tick) -> None:
        state = tick.state
        desired = tick.spec.replicas
        surge, unavailable = tick.spec.policy.resolve_bounds(desired)
        total = len(tick.instances)
        ready = sum(1 for i in tick.instances if i.is_ready)

        state.counters = RolloutCounters(
            total=total,
            ready=ready,
            max_total=desired + surge,
            min_available=max(0, desired - unavailable),
            surge_in_use=max(0, total - desired),
            unavailable_in_use=max(0, desired - ready),
        )
        for revision_id, count in tick.counts().items():
            if count > state.revision_peaks.get(revision_id, 0):
                state.revision_peaks[revision_id] = count

    # State machine

    def _converged_on(self, tick: _Tick, revision_id: Optional[str]) -> bool:
        """True when only ready instances of ``revision_id`` remain, at desired."""
        desired = tick.spec.replicas
        return (
            revision_id is not None
            and len(tick.instances) == desired
            and tick.ready_of(revision_id) == desired
        )

    def _advance(self, tick: _Tick) -> None:
        """Apply progress transitions until the phase is stable."""
        state = tick.state
        desired = tick.spec.replicas

        while True:
            phase = state.phase
            target = state.target_revision_id

            if phase == RolloutPhase.PROGRESSING and state.canary is None:
                if tick.counts().get(target, 0) >= desired:
                    self._transition(
                        tick,
                        RolloutPhase.PROMOTING,
                        "ReplicasUpdated",
                        f"All {desired} instance(s) of {target} created",
                    )
            elif phase == RolloutPhase.PROGRESSING:
                canary = canary_replicas(desired, state.canary.weight)
                stable = tick.counts().get(state.current_revision_id, 0)
                if tick.ready_of(target) >= canary and stable <= desired - canary:
                    self._transition(
                        tick,
                        RolloutPhase.ANALYZING,
                        "CanaryStepReady",
                        f"Canary at {state.canary.weight}% with {canary} instance(s)",
                    )
            elif phase == RolloutPhase.PROMOTING:
                if self._converged_on(tick, target):
                    self._complete(tick)
            elif phase == RolloutPhase.ROLLED_BACK:
                if self._converged_on(tick, state.current_revision_id):
                    state.message = f"Restored {state.current_revision_id}"

            if state.phase == phase:
                return

    def _complete(self, tick: _Tick) -> None:
        state = tick.state
        target = state.target_revision_id

        state.current_revision_id = target
        state.target_revision_id = None
        state.canary = None
        state.traffic_weight = 0
        state.progressing_since = None
        if target in state.live_history:
            state.live_history.remove(target)
        state.live_history.append(target)

        tick.completed = True
        tick.actions.append(
            Action(
                kind=ActionKind.MARK_REVISION,
                workload=state.workload,
                revision_id=target,
            )
        )
        self._transition(
            tick,
            RolloutPhase.COMPLETED,
            "RolloutCompleted",
            f"{target} is live with {tick.spec.replicas} instance(s)",
        )

    def _promote(self, tick: _Tick, reason: str, message: str) -> None:
        state = tick.state
        if state.canary is not None and state.target_revision_id is not None:
            tick.route = (state.target_revision_id, 100)
            state.traffic_weight = 100
        state.canary = None
        state.paused_from = None
        self._transition(tick, RolloutPhase.PROMOTING, reason, message)

    async def _prune(self, tick: _Tick) -> None:
        state = tick.state
        deleted = await self.revisions.prune(
            state.workload,
            keep=tick.spec.policy.revision_history_limit,
            protected=(state.current_revision_id, state.target_revision_id),
            live_counts=tick.counts(),
        )
        for revision_id in deleted:
            state.revision_peaks.pop(revision_id, None)
            if revision_id in state.live_history:
                state.live_history.remove(revision_id)

    # Persistence

    async def _commit(self, tick: _Tick) -> None:
        """Apply traffic changes, persist the state and announce transitions."""
        state = tick.state

        if tick.route is not None and self.router is not None:
            await self.router.set_weight(state.workload, *tick.route)

        if tick.baseline is None or _fingerprint(state) != tick.baseline:
            tick.state = await self.store.put_rollout_state(state)

        if tick.transitions and self.bus is not None:
            await self.bus.emit(
                WatchEvent(
                    event_type=EventType.MODIFIED,
                    resource_type=ResourceType.ROLLOUT,
                    workload=state.workload,
                    key=state.workload,
                    object=tick.state.model_dump(mode="json"),
                )
            )

    async def _record_problem(self, workload: str, message: str, degraded: bool = False) -> None:
        """Best-effort write of an error onto the rollout state."""
        try:
            state = await self.store.get_rollout_state(workload)
            if state is None:
                state = RolloutState(workload=workload)
            state.message = message
            if degraded:
                state.set_condition("Degraded", True, "InvariantViolation", message)
            await self.store.put_rollout_state(state)
        except RolloutError as e:
            logger.warning(f"Could not record problem on {workload}: {e}")

    def _result(self, tick: _Tick) -> ReconcileResult:
        state = tick.state
        settled = (
            state.phase in SETTLED_PHASES or state.phase == RolloutPhase.ROLLED_BACK
        ) and self._converged_on(tick, state.current_revision_id)

        if settled or state.phase == RolloutPhase.FAILED:
            return ReconcileResult.done(reason=state.message, actions=tick.actions)
        return ReconcileResult.requeue(
            reason=state.message or state.phase.value,
            after=self.tick_seconds,
            actions=tick.actions,
        )

    async def _teardown(
        self,
        workload: str,
        state: Optional[RolloutState],
        instances: list[ReplicaInstance],
    ) -> ReconcileResult:
        """Remove every instance, revision and the rollout state of a deleted spec."""
        actions = []
        for instance in instances:
            await self.execution.delete_instance(instance.id)
            await self.store.delete_instance(workload, instance.id)
            actions.append(
                Action(
                    kind=ActionKind.DELETE,
                    workload=workload,
                    revision_id=instance.revision_id,
                    instance_id=instance.id,
                )
            )

        removed = await self.revisions.delete_all(workload)
        if state is not None:
            await self.store.delete_rollout_state(workload)
            if self.bus is not None:
                await self.bus.emit(
                    WatchEvent(
                        event_type=EventType.DELETED,
                        resource_type=ResourceType.ROLLOUT,
                        workload=workload,
                        key=workload,
                    )
                )

        logger.info(
            f"Tore down {workload}: {len(actions)} instance(s), {removed} revision(s)"
        )
        return ReconcileResult.done(reason="Workload deleted", actions=actions)

    # Control operations

    async def _load(self, workload: str, state: Optional[RolloutState] = None) -> _Tick:
        spec = await self.store.get_spec(workload)
        if spec is None:
            raise WorkloadNotFoundError(f"Workload {workload} not found")
        if state is None:
            state = await self.store.get_rollout_state(workload) or RolloutState(
                workload=workload
            )
            return _Tick(spec=spec, state=state, baseline=_fingerprint(state))
        return _Tick(spec=spec, state=state)

    async def pause(self, workload: str) -> RolloutState:
        """
        Pause an in-flight rollout.

        Raises:
            NoActiveRolloutError: If nothing is in flight
        """
        tick = await self._load(workload)
        state = tick.state
        if state.phase == RolloutPhase.PAUSED:
            return state
        if state.phase not in ACTIVE_PHASES:
            raise NoActiveRolloutError(f"{workload} has no rollout in progress")

        state.paused_from = state.phase
        self._transition(tick, RolloutPhase.PAUSED, "PausedByOperator", "Paused by operator")
        await self._commit(tick)
        return tick.state

    async def resume(self, workload: str) -> RolloutState:
        """
        Resume a paused rollout, or roll a halted one forward again.

        A paused rollout returns to the phase it was paused in with a fresh
        deadline. A Failed or RolledBack rollout restarts Progressing towards
        the template the spec currently declares.

        Raises:
            NoActiveRolloutError: If there is nothing to resume
        """
        tick = await self._load(workload)
        state = tick.state

        if state.phase == RolloutPhase.PAUSED:
            phase = state.paused_from or RolloutPhase.PROGRESSING
            state.paused_from = None
            state.progressing_since = self.clock()
            self._transition(tick, phase, "ResumedByOperator", "Resumed by operator")
        elif state.phase in HALTED_PHASES:
            revision = await self.revisions.ensure_revision(tick.spec)
            tick.revisions[revision.id] = revision
            self._start(
                tick,
                revision,
                "RollForward",
                f"Rolling forward to revision {revision.sequence}",
            )
        else:
            raise NoActiveRolloutError(f"{workload} has no rollout to resume")

        await self._commit(tick)
        return tick.state

    async def promote(self, workload: str) -> RolloutState:
        """
        Skip the remaining canary steps and promote the target revision.

        Raises:
            NoActiveRolloutError: If nothing is in flight
        """
        tick = await self._load(workload)
        state = tick.state
        if state.phase == RolloutPhase.PROMOTING:
            return state
        if state.phase not in ACTIVE_PHASES and state.phase != RolloutPhase.PAUSED:
            raise NoActiveRolloutError(f"{workload} has no rollout in progress")

        self._promote(
            tick, "PromotedByOperator", f"Promoting {state.target_revision_id} by operator"
        )
        await self._commit(tick)
        return tick.state

    async def start_rollout(
        self, workload: str, revision: Revision, reason: str, message: str
    ) -> RolloutState:
        """Enter Progressing towards a specific revision."""
        tick = await self._load(workload)
        tick.revisions[revision.id] = revision
        self._start(tick, revision, reason, message)
        await self._commit(tick)
        return tick.state

    async def apply_analysis(
        self, state: RolloutState, decision: CanaryDecision
    ) -> RolloutState:
        """
        Apply a canary analysis decision to the state it was evaluated on.

        Advance raises the canary weight by one step, capped at the maximum
        weight, and returns to Progressing so the new split can be scaled.
        Advancing from the maximum weight, or reaching 100%, promotes.
        Abort routes all traffic back to the stable revision and enters
        RolledBack.

        Args:
            state: Rollout state holding the evaluated canary run
            decision: Analysis decision

        Returns:
            Stored rollout state
        """
        tick = await self._load(state.workload, state)
        run = state.canary
        policy = tick.spec.policy.canary
        if run is None or policy is None:
            raise NoActiveRolloutError(f"{state.workload} has no canary analysis running")

        if decision == CanaryDecision.ADVANCE:
            run.step_index += 1
            weight = min(run.weight + policy.step_weight, policy.max_weight)
            if run.weight >= policy.max_weight or weight >= 100:
                self._promote(
                    tick,
                    "CanaryAnalysisPassed",
                    f"Canary passed {run.step_index} step(s), promoting",
                )
            else:
                run.weight = weight
                state.traffic_weight = weight
                tick.route = (state.target_revision_id, weight)
                self._transition(
                    tick,
                    RolloutPhase.PROGRESSING,
                    "CanaryStepAdvanced",
                    f"Canary advanced to {weight}%",
                )
        elif decision == CanaryDecision.ABORT:
            failures = run.consecutive_failures
            run.step_index = 0
            self._end_canary(tick)
            self._transition(
                tick,
                RolloutPhase.ROLLED_BACK,
                "CanaryAborted",
                f"Canary aborted after {failures} consecutive failed analyses",
            )
        else:
            state.message = (
                f"Canary holding at {run.weight}% "
                f"({run.consecutive_failures}/{policy.threshold} consecutive failures)"
            )

        await self._commit(tick)
        return tick.state
