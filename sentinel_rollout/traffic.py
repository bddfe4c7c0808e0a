"""Traffic routing seam used to shift canary weight."""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class TrafficRouter(ABC):
    """Data-plane adapter (service mesh, ingress) that splits traffic."""

    @abstractmethod
    async def set_weight(self, workload: str, canary_revision_id: str, weight: int) -> None:
        """
        Route ``weight`` percent of a workload's traffic to the canary revision.

        Args:
            workload: Workload key
            canary_revision_id: Revision receiving the canary share
            weight: Percentage, 0-100
        """


class InMemoryTrafficRouter(TrafficRouter):
    """Records weights; the replica split alone shapes traffic."""

    def __init__(self):
        self.weights: dict[str, tuple[str, int]] = {}
        self.history: list[tuple[str, str, int]] = []

    async def set_weight(self, workload: str, canary_revision_id: str, weight: int) -> None:
        self.weights[workload] = (canary_revision_id, weight)
        self.history.append((workload, canary_revision_id, weight))
        logger.info(f"Traffic split for {workload}: {weight}% to {canary_revision_id}")

    def weight_of(self, workload: str) -> int:
        return self.weights.get(workload, ("", 0))[1]
