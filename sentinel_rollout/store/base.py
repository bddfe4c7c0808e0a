"""State store client interface."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..events import EventBus, EventType, ResourceType, WatchEvent
from ..models import DesiredSpec, ReplicaInstance, Revision, RolloutState
from ..ownership import apply_ownership, release_field

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """
    Typed access to desired-spec and actual-state records.

    Rollout states are versioned: ``put_rollout_state`` only succeeds when the
    caller's ``version`` matches the stored one. Spec and instance writes are
    announced on the event bus so the controller can react to them.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        """
        Initialize state store.

        Args:
            bus: Event bus receiving change notifications
        """
        self.bus = bus

    async def _notify(
        self,
        event_type: EventType,
        resource_type: ResourceType,
        workload: str,
        key: str,
        obj: dict,
    ) -> None:
        if self.bus is None:
            return
        await self.bus.emit(
            WatchEvent(
                event_type=event_type,
                resource_type=resource_type,
                workload=workload,
                key=key,
                object=obj,
            )
        )

    # Desired specs

    async def put_spec(
        self, spec: DesiredSpec, manager: str = "operator", force: bool = False
    ) -> DesiredSpec:
        """
        Create or update a desired spec.

        Args:
            spec: Desired spec; its template must carry a content hash
            manager: Name of the writing manager, checked against field owners
            force: Take ownership of fields owned by other managers

        Returns:
            Stored spec with generation and ownership filled in

        Raises:
            OwnershipConflictError: If a changed field belongs to another manager
        """
        if not spec.template.hash:
            raise ValueError("Template content hash is required")

        existing = await self.get_spec(spec.workload)
        stored = apply_ownership(existing, spec, manager, force=force)
        stored = stored.model_copy(
            update={"generation": (existing.generation if existing else 0) + 1}
        )
        await self._save_spec(stored)

        await self._notify(
            EventType.MODIFIED if existing else EventType.ADDED,
            ResourceType.SPEC,
            spec.workload,
            spec.workload,
            stored.model_dump(mode="json"),
        )
        logger.debug(f"Stored spec {spec.workload} generation {stored.generation}")
        return stored

    async def delete_spec(self, workload: str) -> bool:
        """
        Delete a desired spec.

        Returns:
            True if deleted, False if not found
        """
        removed = await self._remove_spec(workload)
        if removed:
            await self._notify(
                EventType.DELETED, ResourceType.SPEC, workload, workload, {}
            )
        return removed

    async def release_field(self, workload: str, field: str, manager: str) -> None:
        """Drop a manager's ownership of a spec field without bumping the generation."""
        spec = await self.get_spec(workload)
        if spec is not None and spec.field_owners.get(field) == manager:
            await self._save_spec(release_field(spec, field, manager))

    @abstractmethod
    async def get_spec(self, workload: str) -> Optional[DesiredSpec]:
        """Get a desired spec or None if not found."""

    @abstractmethod
    async def list_workloads(self) -> list[str]:
        """List workload keys that have a spec or a rollout state."""

    @abstractmethod
    async def _save_spec(self, spec: DesiredSpec) -> None:
        pass

    @abstractmethod
    async def _remove_spec(self, workload: str) -> bool:
        pass

    # Rollout states

    @abstractmethod
    async def get_rollout_state(self, workload: str) -> Optional[RolloutState]:
        """Get the rollout state or None if not found."""

    @abstractmethod
    async def put_rollout_state(self, state: RolloutState) -> RolloutState:
        """
        Write a rollout state with optimistic concurrency.

        ``state.version`` must equal the stored version (0 for a new record).

        Returns:
            Stored copy with ``version`` incremented

        Raises:
            ConflictError: If the stored version moved
        """

    @abstractmethod
    async def delete_rollout_state(self, workload: str) -> bool:
        """Delete a rollout state."""

    # Revisions

    @abstractmethod
    async def create_revision(self, revision: Revision) -> Revision:
        """
        Create a revision. All-or-nothing.

        Raises:
            ValueError: If a revision with the same id exists
        """

    @abstractmethod
    async def list_revisions(self, workload: str) -> list[Revision]:
        """List revisions ordered by sequence."""

    @abstractmethod
    async def delete_revision(self, workload: str, revision_id: str) -> bool:
        """Delete a revision."""

    async def get_revision(self, workload: str, revision_id: str) -> Optional[Revision]:
        for revision in await self.list_revisions(workload):
            if revision.id == revision_id:
                return revision
        return None

    # Replica instances

    @abstractmethod
    async def list_instances(self, workload: str) -> list[ReplicaInstance]:
        """List replica instance records of a workload."""

    async def put_instance(self, instance: ReplicaInstance) -> None:
        """Create or update a replica instance record."""
        created = await self._save_instance(instance)
        await self._notify(
            EventType.ADDED if created else EventType.MODIFIED,
            ResourceType.INSTANCE,
            instance.workload,
            instance.id,
            instance.model_dump(mode="json"),
        )

    async def delete_instance(self, workload: str, instance_id: str) -> bool:
        """Delete a replica instance record."""
        removed = await self._remove_instance(workload, instance_id)
        if removed:
            await self._notify(
                EventType.DELETED, ResourceType.INSTANCE, workload, instance_id, {}
            )
        return removed

    @abstractmethod
    async def _save_instance(self, instance: ReplicaInstance) -> bool:
        """Persist an instance; return True when it did not exist before."""

    @abstractmethod
    async def _remove_instance(self, workload: str, instance_id: str) -> bool:
        pass

    async def close(self) -> None:
        """Flush and release resources."""
