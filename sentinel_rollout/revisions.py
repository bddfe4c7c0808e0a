"""Revision history management."""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Callable, Optional

from .errors import RevisionWriteError, StoreUnavailableError
from .models import DesiredSpec, Revision
from .store import StateStore

logger = logging.getLogger(__name__)


class RevisionManager:
    """
    Maintains the ordered, deduplicated revision history of each workload.

    A revision is created once per distinct template hash; rolling back to a
    template that already has a revision reuses it.
    """

    def __init__(self, store: StateStore, clock: Callable[[], datetime] = datetime.utcnow):
        """
        Initialize revision manager.

        Args:
            store: State store client
            clock: Time source for creation timestamps
        """
        self.store = store
        self.clock = clock

    async def ensure_revision(self, spec: DesiredSpec) -> Revision:
        """
        Return the revision for the spec's template, creating it if needed.

        Args:
            spec: Desired spec

        Returns:
            Existing revision with the same template hash, or a new revision
            with sequence max + 1

        Raises:
            RevisionWriteError: If the new revision could not be written
        """
        revisions = await self.store.list_revisions(spec.workload)
        for revision in revisions:
            if revision.template_hash == spec.template.hash:
                return revision

        sequence = max((r.sequence for r in revisions), default=0) + 1
        revision = Revision(
            id=Revision.make_id(spec.workload, spec.template.hash),
            workload=spec.workload,
            template_hash=spec.template.hash,
            template=spec.template.model_copy(deep=True),
            sequence=sequence,
            created_at=self.clock(),
        )

        try:
            await self.store.create_revision(revision)
        except (StoreUnavailableError, ValueError) as e:
            raise RevisionWriteError(
                f"Failed to create revision {sequence} for {spec.workload}: {e}"
            ) from e

        logger.info(
            f"Created revision {revision.id} (sequence {sequence}) for {spec.workload}"
        )
        return revision

    async def list_revisions(self, workload: str) -> list[Revision]:
        """List revisions of a workload ordered by sequence."""
        return await self.store.list_revisions(workload)

    async def get(self, workload: str, revision_id: str) -> Optional[Revision]:
        return await self.store.get_revision(workload, revision_id)

    async def resolve(self, workload: str, ref: str) -> Optional[Revision]:
        """
        Resolve a revision by id or by sequence number.

        Args:
            workload: Workload key
            ref: Revision id, or its sequence number as a string

        Returns:
            Revision or None if nothing matches
        """
        revisions = await self.store.list_revisions(workload)
        for revision in revisions:
            if revision.id == ref:
                return revision
        if ref.isdigit():
            sequence = int(ref)
            for revision in revisions:
                if revision.sequence == sequence:
                    return revision
        return None

    async def prune(
        self,
        workload: str,
        keep: int = 10,
        protected: Iterable[Optional[str]] = (),
        live_counts: Optional[dict[str, int]] = None,
    ) -> list[str]:
        """
        Delete revisions scaled to zero beyond the retention window.

        Args:
            workload: Workload key
            keep: Number of scaled-down revisions to retain
            protected: Revision ids never deleted (current, target)
            live_counts: Instance count per revision id

        Returns:
            Ids of deleted revisions, oldest first
        """
        protected_ids = {r for r in protected if r}
        counts = live_counts or {}
        candidates = [
            r
            for r in await self.store.list_revisions(workload)
            if r.id not in protected_ids and counts.get(r.id, 0) == 0
        ]

        excess = len(candidates) - max(keep, 0)
        if excess <= 0:
            return []

        deleted = []
        for revision in candidates[:excess]:
            if await self.store.delete_revision(workload, revision.id):
                deleted.append(revision.id)
                logger.info(
                    f"Pruned revision {revision.id} (sequence {revision.sequence}) "
                    f"of {workload}"
                )
        return deleted

    async def delete_all(self, workload: str) -> int:
        """Delete every revision of a workload."""
        deleted = 0
        for revision in await self.store.list_revisions(workload):
            if await self.store.delete_revision(workload, revision.id):
                deleted += 1
        return deleted
