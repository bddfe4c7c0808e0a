"""Rollback manager - returns a workload to an earlier revision."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from uuid import UUID, uuid4

from .errors import InvalidRevisionError, WorkloadNotFoundError
from .events import EventBus, EventType, ResourceType, WatchEvent
from .leases import KeyLeases
from .models import SETTLED_PHASES, Revision, RolloutPhase, RolloutState
from .revisions import RevisionManager
from .rollout import RolloutOrchestrator
from .store import StateStore

logger = logging.getLogger(__name__)

ROLLBACK_MANAGER = "rollback-manager"
PREVIOUS = "previous"


class RollbackReason(str, Enum):
    """Reason a rollback was requested."""

    MANUAL = "manual"
    HALTED_ROLLOUT = "halted_rollout"
    IN_FLIGHT_ROLLOUT = "in_flight_rollout"


class RollbackStatus(str, Enum):
    """Rollback execution status."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RollbackRecord:
    """A requested rollback and how it ended."""

    id: UUID
    workload: str
    from_revision: Optional[str]
    to_revision: str
    to_sequence: int
    reason: RollbackReason
    status: RollbackStatus
    requested_at: datetime
    completed_at: Optional[datetime] = None
    message: str = ""


class RollbackManager:
    """
    Rolls workloads back by re-targeting an earlier revision.

    A rollback writes the revision's template back into the desired spec and
    starts an ordinary rollout towards it, so it honors the same surge and
    unavailability bounds as any other update. Revisions are reused, never
    copied, so rolling back twice returns to the starting revision.
    """

    def __init__(
        self,
        store: StateStore,
        revisions: RevisionManager,
        orchestrator: RolloutOrchestrator,
        leases: KeyLeases,
        bus: Optional[EventBus] = None,
        enqueue: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize rollback manager.

        Args:
            store: State store client
            revisions: Revision manager
            orchestrator: Orchestrator that runs the rollout
            leases: Per-workload leases
            bus: Event bus announcing rollout transitions
            enqueue: Callback asking the controller to reconcile a workload
        """
        self.store = store
        self.revisions = revisions
        self.orchestrator = orchestrator
        self.leases = leases
        self.bus = bus
        self.enqueue = enqueue

        self._rollback_history: dict[UUID, RollbackRecord] = {}
        self._active: dict[str, UUID] = {}

        if bus is not None:
            bus.register_handler(ResourceType.ROLLOUT, self._handle_rollout_event)

    async def resolve_previous(self, workload: str, state: RolloutState) -> Revision:
        """
        Resolve the revision "previous" refers to.

        While a rollout is in flight or halted, the previous revision is the
        one currently live. Otherwise it is the most recently live revision,
        other than the current one, that ever ran instances.

        Raises:
            InvalidRevisionError: If there is no such revision
        """
        if state.phase not in SETTLED_PHASES and state.current_revision_id is not None:
            revision = await self.revisions.get(workload, state.current_revision_id)
            if revision is not None:
                return revision

        for revision_id in reversed(state.live_history):
            if revision_id == state.current_revision_id:
                continue
            if state.revision_peaks.get(revision_id, 0) == 0:
                continue
            revision = await self.revisions.get(workload, revision_id)
            if revision is not None:
                return revision

        raise InvalidRevisionError(f"{workload} has no previous revision to roll back to")

    async def rollback_to(self, workload: str, ref: str = PREVIOUS) -> RollbackRecord:
        """
        Roll a workload back to an earlier revision.

        Args:
            workload: Workload key
            ref: "previous", a revision id or a revision sequence number

        Returns:
            Rollback record

        Raises:
            WorkloadNotFoundError: If the workload has no spec
            InvalidRevisionError: If ``ref`` does not resolve to a usable revision
        """
        async with self.leases.hold(workload):
            spec = await self.store.get_spec(workload)
            if spec is None:
                raise WorkloadNotFoundError(f"Workload {workload} not found")

            state = await self.store.get_rollout_state(workload) or RolloutState(
                workload=workload
            )

            if ref == PREVIOUS:
                revision = await self.resolve_previous(workload, state)
            else:
                revision = await self.revisions.resolve(workload, ref)
                if revision is None:
                    raise InvalidRevisionError(f"Revision {ref} of {workload} does not exist")

            heading_to = state.target_revision_id or state.current_revision_id
            if revision.id == heading_to:
                raise InvalidRevisionError(
                    f"Revision {revision.sequence} is already the target of {workload}"
                )

            if state.phase in (RolloutPhase.FAILED, RolloutPhase.ROLLED_BACK):
                reason = RollbackReason.HALTED_ROLLOUT
            elif state.phase in SETTLED_PHASES:
                reason = RollbackReason.MANUAL
            else:
                reason = RollbackReason.IN_FLIGHT_ROLLOUT

            rolled = spec.model_copy(update={"template": revision.template.model_copy(deep=True)})
            await self.store.put_spec(rolled, manager=ROLLBACK_MANAGER, force=True)
            # Hand the template back so the next operator write is not a conflict.
            await self.store.release_field(workload, "template", ROLLBACK_MANAGER)

            await self.orchestrator.start_rollout(
                workload,
                revision,
                "RollbackRequested",
                f"Rolling back to revision {revision.sequence}",
            )

        record = RollbackRecord(
            id=uuid4(),
            workload=workload,
            from_revision=heading_to,
            to_revision=revision.id,
            to_sequence=revision.sequence,
            reason=reason,
            status=RollbackStatus.IN_PROGRESS,
            requested_at=datetime.utcnow(),
        )
        self._supersede(workload)
        self._rollback_history[record.id] = record
        self._active[workload] = record.id

        logger.info(
            f"Rollback {record.id}: {workload} from {heading_to} to {revision.id} "
            f"(sequence {revision.sequence}, reason: {reason.value})"
        )

        if self.enqueue is not None:
            self.enqueue(workload)
        return record

    def _supersede(self, workload: str) -> None:
        record_id = self._active.pop(workload, None)
        if record_id is None:
            return
        record = self._rollback_history[record_id]
        if record.status == RollbackStatus.IN_PROGRESS:
            record.status = RollbackStatus.FAILED
            record.completed_at = datetime.utcnow()
            record.message = "Superseded by a later rollback"

    def _handle_rollout_event(self, event: WatchEvent) -> None:
        record_id = self._active.get(event.workload)
        if record_id is None:
            return
        record = self._rollback_history[record_id]

        if event.event_type == EventType.DELETED:
            record.status = RollbackStatus.FAILED
            record.message = "Workload deleted"
        else:
            phase = event.object.get("phase")
            current = event.object.get("current_revision_id")
            target = event.object.get("target_revision_id")
            if phase == RolloutPhase.COMPLETED.value and current == record.to_revision:
                record.status = RollbackStatus.COMPLETED
                record.message = f"Revision {record.to_sequence} is live"
            elif target != record.to_revision:
                record.status = RollbackStatus.FAILED
                record.message = f"Rollout retargeted to {target}"
            elif phase in (RolloutPhase.FAILED.value, RolloutPhase.ROLLED_BACK.value):
                record.status = RollbackStatus.FAILED
                record.message = event.object.get("message", "")
            else:
                return

        record.completed_at = datetime.utcnow()
        del self._active[event.workload]
        logger.info(f"Rollback {record.id} {record.status.value}: {record.message}")

    def get_rollback_record(self, rollback_id: UUID) -> Optional[RollbackRecord]:
        """Get a rollback record by id."""
        return self._rollback_history.get(rollback_id)

    def list_rollbacks(self, workload: Optional[str] = None) -> list[RollbackRecord]:
        """List rollback records, newest first."""
        records = [
            r for r in self._rollback_history.values() if workload is None or r.workload == workload
        ]
        return sorted(records, key=lambda r: r.requested_at, reverse=True)
