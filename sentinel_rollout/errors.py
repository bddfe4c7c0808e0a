"""Error taxonomy for the rollout control plane."""


class RolloutError(Exception):
    """Base class for control plane errors."""


class TransientError(RolloutError):
    """Temporary failure; retried with backoff, never a rollout failure."""


class StoreUnavailableError(TransientError):
    """State store could not be reached."""


class ConflictError(TransientError):
    """Optimistic concurrency check failed on a versioned record."""

    def __init__(self, key: str, expected: int, actual: int):
        super().__init__(
            f"Version conflict on {key}: expected {expected}, found {actual}"
        )
        self.key = key
        self.expected = expected
        self.actual = actual


class CollaboratorTimeoutError(TransientError):
    """Execution collaborator did not acknowledge in time."""


class MetricsProviderError(TransientError):
    """Metrics provider query failed."""


class InvariantViolationError(RolloutError):
    """A computed action batch would break the surge/unavailable bounds."""


class RevisionWriteError(RolloutError):
    """Revision creation failed; the reconcile attempt is aborted."""


class OwnershipConflictError(RolloutError):
    """A field is owned by a different manager."""

    def __init__(self, field: str, owner: str, manager: str):
        super().__init__(
            f"Field {field!r} is owned by {owner!r}, refusing write from {manager!r}"
        )
        self.field = field
        self.owner = owner
        self.manager = manager


class WorkloadNotFoundError(RolloutError):
    """No desired spec exists for the workload."""


class NoActiveRolloutError(RolloutError):
    """The requested operation needs an in-flight rollout."""


class InvalidRevisionError(RolloutError):
    """The requested rollback target does not resolve to a usable revision."""


class UnknownKindError(RolloutError):
    """No reconciler is registered for a resource kind."""
