"""Execution collaborator interface, retrying client and simulated backend."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import CollaboratorTimeoutError, TransientError
from .models import HealthSignal, Revision

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (asyncio.TimeoutError, TransientError, ConnectionError)


class ExecutionBackend(ABC):
    """
    Runtime that starts and stops replica instances.

    Implementations must be idempotent: creating an instance id that already
    exists and deleting one that is already gone both succeed.
    """

    @abstractmethod
    async def create_instance(self, revision: Revision, instance_id: str) -> str:
        """
        Start an instance of a revision.

        Args:
            revision: Revision whose template the instance runs
            instance_id: Idempotency key and name of the instance

        Returns:
            Instance id
        """

    @abstractmethod
    async def delete_instance(self, instance_id: str) -> None:
        """Stop an instance."""

    @abstractmethod
    async def get_instance_health(self, instance_id: str) -> HealthSignal:
        """Report readiness of an instance."""


class ExecutionClient:
    """
    Wraps an execution backend with a per-call timeout and bounded retry.

    The orchestrator treats an action as done only once this client returns.
    Exhausted retries surface as ``CollaboratorTimeoutError``, a transient
    error that requeues the reconcile.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        wait_multiplier: float = 0.5,
        wait_max: float = 5.0,
    ):
        """
        Initialize execution client.

        Args:
            backend: Execution backend
            timeout_seconds: Timeout applied to each individual call
            max_attempts: Attempts per operation before giving up
            wait_multiplier: Exponential backoff multiplier between attempts
            wait_max: Cap on the wait between attempts
        """
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.wait_multiplier = wait_multiplier
        self.wait_max = wait_max

    async def _call(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.wait_multiplier, max=self.wait_max),
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                reraise=True,
            ):
                with attempt:
                    return await asyncio.wait_for(fn(*args), timeout=self.timeout_seconds)
        except RETRYABLE_ERRORS as e:
            raise CollaboratorTimeoutError(
                f"{operation} failed after {self.max_attempts} attempts: {e!r}"
            ) from e
        raise CollaboratorTimeoutError(f"{operation} was not attempted")

    async def create_instance(self, revision: Revision, instance_id: str) -> str:
        return await self._call(
            f"create_instance({instance_id})",
            self.backend.create_instance,
            revision,
            instance_id,
        )

    async def delete_instance(self, instance_id: str) -> None:
        await self._call(
            f"delete_instance({instance_id})", self.backend.delete_instance, instance_id
        )

    async def get_instance_health(self, instance_id: str) -> HealthSignal:
        return await self._call(
            f"get_instance_health({instance_id})",
            self.backend.get_instance_health,
            instance_id,
        )


@dataclass
class SimulatedInstance:
    """Instance tracked by the in-memory backend."""

    instance_id: str
    revision_id: str
    polls: int = 0
    ready: bool = False
    failed: bool = False


@dataclass
class BackendSnapshot:
    """Instance totals recorded after every backend mutation."""

    operation: str
    instance_id: str
    total: int
    ready: int
    by_revision: dict[str, int] = field(default_factory=dict)


class InMemoryBackend(ExecutionBackend):
    """
    Simulated runtime for development and tests.

    Instances report NotReady until they have been polled
    ``ready_after_polls`` times, then Ready. Instances of revisions listed in
    ``unhealthy_revisions`` never become ready, and ``fail_instance`` turns a
    running instance unhealthy.
    """

    def __init__(self, ready_after_polls: int = 1):
        """
        Initialize in-memory backend.

        Args:
            ready_after_polls: Health polls before an instance turns Ready
        """
        self.ready_after_polls = ready_after_polls
        self.instances: dict[str, SimulatedInstance] = {}
        self.unhealthy_revisions: set[str] = set()
        self.history: list[BackendSnapshot] = []
        self.create_calls = 0
        self.delete_calls = 0

    def _record(self, operation: str, instance_id: str) -> None:
        by_revision: dict[str, int] = {}
        for instance in self.instances.values():
            by_revision[instance.revision_id] = by_revision.get(instance.revision_id, 0) + 1
        self.history.append(
            BackendSnapshot(
                operation=operation,
                instance_id=instance_id,
                total=len(self.instances),
                ready=self.ready_count(),
                by_revision=by_revision,
            )
        )

    def ready_count(self) -> int:
        return sum(1 for i in self.instances.values() if i.ready and not i.failed)

    async def create_instance(self, revision: Revision, instance_id: str) -> str:
        self.create_calls += 1
        if instance_id not in self.instances:
            self.instances[instance_id] = SimulatedInstance(
                instance_id=instance_id,
                revision_id=revision.id,
                ready=self.ready_after_polls == 0
                and revision.id not in self.unhealthy_revisions,
            )
            self._record("create", instance_id)
        return instance_id

    async def delete_instance(self, instance_id: str) -> None:
        self.delete_calls += 1
        if self.instances.pop(instance_id, None) is not None:
            self._record("delete", instance_id)

    async def get_instance_health(self, instance_id: str) -> HealthSignal:
        instance = self.instances.get(instance_id)
        if instance is None:
            return HealthSignal.UNKNOWN
        if instance.failed or instance.revision_id in self.unhealthy_revisions:
            instance.ready = False
            return HealthSignal.NOT_READY

        instance.polls += 1
        if instance.polls >= self.ready_after_polls:
            instance.ready = True
        return HealthSignal.READY if instance.ready else HealthSignal.NOT_READY

    def fail_instance(self, instance_id: str) -> None:
        """Make an instance report NotReady from now on."""
        self.instances[instance_id].failed = True
        self.instances[instance_id].ready = False

    def count(self, revision_id: str | None = None) -> int:
        if revision_id is None:
            return len(self.instances)
        return sum(1 for i in self.instances.values() if i.revision_id == revision_id)
