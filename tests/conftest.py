"""Pytest configuration and fixtures for rollout controller tests."""

from datetime import datetime, timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from sentinel_rollout.api import create_app
from sentinel_rollout.config import Settings
from sentinel_rollout.controlplane import ControlPlane
from sentinel_rollout.events import EventBus
from sentinel_rollout.executor import ExecutionClient, InMemoryBackend
from sentinel_rollout.leases import KeyLeases
from sentinel_rollout.metrics import MetricsProvider
from sentinel_rollout.models import (
    CanaryPolicy,
    DesiredSpec,
    MetricCheck,
    StrategyKind,
    TemplateSpec,
    UpdatePolicy,
)
from sentinel_rollout.revisions import RevisionManager
from sentinel_rollout.rollout import RolloutOrchestrator
from sentinel_rollout.store import InMemoryStateStore
from sentinel_rollout.traffic import InMemoryTrafficRouter


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedMetricsProvider(MetricsProvider):
    """Returns queued values per metric; a queued exception is raised instead."""

    def __init__(self, default: float = 100.0):
        self.default = default
        self.scripts: dict[str, list] = {}
        self.calls: list[tuple[str, int, str]] = []

    def script(self, metric_name: str, *values) -> None:
        self.scripts.setdefault(metric_name, []).extend(values)

    async def query(self, metric_name: str, window_seconds: int, workload: str = "") -> float:
        self.calls.append((metric_name, window_seconds, workload))
        queue = self.scripts.get(metric_name)
        value = queue.pop(0) if queue else self.default
        if isinstance(value, Exception):
            raise value
        return value


def make_spec(
    workload: str = "web",
    replicas: int = 6,
    image: str = "web:1",
    max_surge=1,
    max_unavailable=1,
    progress_deadline_seconds: int = 600,
    canary: Optional[CanaryPolicy] = None,
) -> DesiredSpec:
    """Build a desired spec for tests."""
    return DesiredSpec(
        workload=workload,
        replicas=replicas,
        template=TemplateSpec.from_payload({"image": image}),
        policy=UpdatePolicy(
            strategy=StrategyKind.CANARY if canary else StrategyKind.ROLLING,
            max_surge=max_surge,
            max_unavailable=max_unavailable,
            progress_deadline_seconds=progress_deadline_seconds,
            canary=canary,
        ),
    )


def make_canary_policy(**overrides) -> CanaryPolicy:
    """Canary policy checking the request success rate."""
    values = {
        "step_weight": 10,
        "max_weight": 50,
        "interval_seconds": 60,
        "threshold": 5,
        "metrics": [MetricCheck(name="request-success-rate", window_seconds=60, min_value=99.0)],
    }
    values.update(overrides)
    return CanaryPolicy(**values)


async def reconcile_until_settled(orchestrator: RolloutOrchestrator, workload: str, limit: int = 20):
    """Reconcile repeatedly until Done; return the number of ticks used."""
    for tick in range(1, limit + 1):
        result = await orchestrator.reconcile(workload)
        if result.kind.value == "done":
            return tick
    raise AssertionError(f"{workload} did not settle within {limit} ticks")


@pytest.fixture
def clock():
    """Fake wall clock."""
    return FakeClock()


@pytest.fixture
def bus():
    """Event bus."""
    return EventBus()


@pytest.fixture
def store(bus):
    """In-memory state store wired to the bus."""
    return InMemoryStateStore(bus)


@pytest.fixture
def backend():
    """Simulated execution backend; instances turn ready on their first health poll."""
    return InMemoryBackend(ready_after_polls=1)


@pytest.fixture
def execution(backend):
    """Execution client without retry waits."""
    return ExecutionClient(backend, timeout_seconds=1.0, max_attempts=2, wait_multiplier=0)


@pytest.fixture
def revisions(store, clock):
    """Revision manager."""
    return RevisionManager(store, clock=clock)


@pytest.fixture
def router():
    """Recording traffic router."""
    return InMemoryTrafficRouter()


@pytest.fixture
def leases():
    """Per-workload leases."""
    return KeyLeases()


@pytest.fixture
def orchestrator(store, revisions, execution, router, bus, clock):
    """Rollout orchestrator over the in-memory collaborators."""
    return RolloutOrchestrator(
        store,
        revisions,
        execution,
        router=router,
        bus=bus,
        clock=clock,
        instance_failure_threshold=3,
        tick_seconds=5.0,
    )


@pytest.fixture
def metrics_provider():
    """Scripted metrics provider."""
    return ScriptedMetricsProvider()


@pytest.fixture
def settings():
    """Settings for an in-process control plane."""
    return Settings(
        workers=1,
        rollout_tick_seconds=0.01,
        resync_interval_seconds=60,
        collaborator_timeout_seconds=1.0,
        collaborator_max_attempts=1,
        database_url="",
        kafka_enabled=False,
    )


@pytest.fixture
def plane(settings):
    """Control plane over in-memory collaborators; not started."""
    return ControlPlane(
        InMemoryStateStore(),
        InMemoryBackend(ready_after_polls=1),
        ScriptedMetricsProvider(),
        settings=settings,
    )


@pytest.fixture
def api_client(plane, settings):
    """Test client for the control API of ``plane``."""
    return TestClient(create_app(plane, settings))
