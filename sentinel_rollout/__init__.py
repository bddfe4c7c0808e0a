"""Sentinel Rollout - declarative reconciliation with rolling, canary and rollback updates."""

from .canary import CanaryAnalysisEngine
from .controlplane import ControlPlane
from .errors import (
    CollaboratorTimeoutError,
    ConflictError,
    InvalidRevisionError,
    InvariantViolationError,
    MetricsProviderError,
    NoActiveRolloutError,
    OwnershipConflictError,
    RevisionWriteError,
    RolloutError,
    StoreUnavailableError,
    TransientError,
    WorkloadNotFoundError,
)
from .events import EventBus, EventType, ResourceType, WatchEvent
from .executor import ExecutionBackend, ExecutionClient, InMemoryBackend
from .metrics import MetricsProvider, PrometheusMetricsProvider
from .models import (
    CanaryDecision,
    CanaryPolicy,
    DesiredSpec,
    MetricCheck,
    ReplicaInstance,
    Revision,
    RolloutPhase,
    RolloutState,
    RolloutStatus,
    StrategyKind,
    TemplateSpec,
    UpdatePolicy,
)
from .reconciler import Controller, ReconcileResult, ReconcilerRegistry
from .revisions import RevisionManager
from .rollback import RollbackManager
from .rollout import RolloutOrchestrator, plan_scaling, verify_plan
from .store import InMemoryStateStore, SQLStateStore, StateStore, create_store
from .traffic import InMemoryTrafficRouter, TrafficRouter
from .workqueue import WorkQueue

__version__ = "0.1.0"

__all__ = [
    # Control plane
    "ControlPlane",
    "Controller",
    "ReconcilerRegistry",
    "ReconcileResult",
    "WorkQueue",
    "RolloutOrchestrator",
    "CanaryAnalysisEngine",
    "RollbackManager",
    "RevisionManager",
    "plan_scaling",
    "verify_plan",
    # Store and events
    "StateStore",
    "InMemoryStateStore",
    "SQLStateStore",
    "create_store",
    "EventBus",
    "EventType",
    "ResourceType",
    "WatchEvent",
    # Collaborators
    "ExecutionBackend",
    "ExecutionClient",
    "InMemoryBackend",
    "MetricsProvider",
    "PrometheusMetricsProvider",
    "TrafficRouter",
    "InMemoryTrafficRouter",
    # Models
    "DesiredSpec",
    "TemplateSpec",
    "UpdatePolicy",
    "CanaryPolicy",
    "MetricCheck",
    "StrategyKind",
    "Revision",
    "ReplicaInstance",
    "RolloutPhase",
    "RolloutState",
    "RolloutStatus",
    "CanaryDecision",
    # Errors
    "RolloutError",
    "TransientError",
    "StoreUnavailableError",
    "ConflictError",
    "CollaboratorTimeoutError",
    "MetricsProviderError",
    "InvariantViolationError",
    "RevisionWriteError",
    "OwnershipConflictError",
    "WorkloadNotFoundError",
    "NoActiveRolloutError",
    "InvalidRevisionError",
]
