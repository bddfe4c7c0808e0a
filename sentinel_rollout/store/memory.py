"""In-memory state store."""

from datetime import datetime
from typing import Optional

from ..errors import ConflictError
from ..events import EventBus
from ..models import DesiredSpec, ReplicaInstance, Revision, RolloutState
from .base import StateStore


class InMemoryStateStore(StateStore):
    """
    Process-local state store.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        super().__init__(bus)
        self._specs: dict[str, DesiredSpec] = {}
        self._states: dict[str, RolloutState] = {}
        self._revisions: dict[str, dict[str, Revision]] = {}
        self._instances: dict[str, dict[str, ReplicaInstance]] = {}

    async def get_spec(self, workload: str) -> Optional[DesiredSpec]:
        spec = self._specs.get(workload)
        return spec.model_copy(deep=True) if spec else None

    async def list_workloads(self) -> list[str]:
        return sorted(set(self._specs) | set(self._states))

    async def _save_spec(self, spec: DesiredSpec) -> None:
        self._specs[spec.workload] = spec.model_copy(deep=True)

    async def _remove_spec(self, workload: str) -> bool:
        return self._specs.pop(workload, None) is not None

    async def get_rollout_state(self, workload: str) -> Optional[RolloutState]:
        state = self._states.get(workload)
        return state.model_copy(deep=True) if state else None

    async def put_rollout_state(self, state: RolloutState) -> RolloutState:
        existing = self._states.get(state.workload)
        actual = existing.version if existing else 0
        if state.version != actual:
            raise ConflictError(f"rollout/{state.workload}", state.version, actual)

        stored = state.model_copy(
            deep=True, update={"version": actual + 1, "updated_at": datetime.utcnow()}
        )
        self._states[state.workload] = stored
        return stored.model_copy(deep=True)

    async def delete_rollout_state(self, workload: str) -> bool:
        return self._states.pop(workload, None) is not None

    async def create_revision(self, revision: Revision) -> Revision:
        revisions = self._revisions.setdefault(revision.workload, {})
        if revision.id in revisions:
            raise ValueError(f"Revision {revision.id} already exists")
        revisions[revision.id] = revision
        return revision

    async def list_revisions(self, workload: str) -> list[Revision]:
        return sorted(
            self._revisions.get(workload, {}).values(), key=lambda r: r.sequence
        )

    async def delete_revision(self, workload: str, revision_id: str) -> bool:
        return self._revisions.get(workload, {}).pop(revision_id, None) is not None

    async def list_instances(self, workload: str) -> list[ReplicaInstance]:
        return [
            i.model_copy(deep=True)
            for i in sorted(
                self._instances.get(workload, {}).values(),
                key=lambda i: (i.created_at, i.id),
            )
        ]

    async def _save_instance(self, instance: ReplicaInstance) -> bool:
        instances = self._instances.setdefault(instance.workload, {})
        created = instance.id not in instances
        instances[instance.id] = instance.model_copy(deep=True)
        return created

    async def _remove_instance(self, workload: str, instance_id: str) -> bool:
        return self._instances.get(workload, {}).pop(instance_id, None) is not None
