"""Tests for the execution client and backends."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from sentinel_rollout.errors import CollaboratorTimeoutError, TransientError
from sentinel_rollout.executor import ExecutionBackend, ExecutionClient, InMemoryBackend
from sentinel_rollout.kubernetes_backend import KubernetesPodBackend
from sentinel_rollout.models import HealthSignal, Revision, TemplateSpec


def make_revision(payload=None) -> Revision:
    template = TemplateSpec.from_payload(payload or {"image": "web:1"})
    return Revision(
        id=Revision.make_id("web", template.hash),
        workload="web",
        template_hash=template.hash,
        template=template,
        sequence=1,
    )


class TestExecutionClient:
    """Test cases for ExecutionClient."""

    @pytest.fixture
    def backend(self):
        """Mock execution backend."""
        return AsyncMock(spec=ExecutionBackend)

    @pytest.mark.asyncio
    async def test_passes_through(self, backend):
        """Test successful calls return the backend result."""
        backend.get_instance_health.return_value = HealthSignal.READY
        execution = ExecutionClient(backend, wait_multiplier=0)

        assert await execution.get_instance_health("web-1") == HealthSignal.READY
        backend.get_instance_health.assert_awaited_once_with("web-1")

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, backend):
        """Test a transient failure is retried until it succeeds."""
        backend.create_instance.side_effect = [ConnectionError("reset"), "web-1"]
        execution = ExecutionClient(backend, max_attempts=3, wait_multiplier=0)

        assert await execution.create_instance(make_revision(), "web-1") == "web-1"
        assert backend.create_instance.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_timeout(self, backend):
        """Test exhausted retries surface as a collaborator timeout."""
        backend.delete_instance.side_effect = TransientError("unavailable")
        execution = ExecutionClient(backend, max_attempts=2, wait_multiplier=0)

        with pytest.raises(CollaboratorTimeoutError):
            await execution.delete_instance("web-1")
        assert backend.delete_instance.await_count == 2

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        """Test a call exceeding its timeout is abandoned."""

        class SlowBackend(InMemoryBackend):
            async def get_instance_health(self, instance_id):
                await asyncio.sleep(1)
                return HealthSignal.READY

        execution = ExecutionClient(
            SlowBackend(), timeout_seconds=0.01, max_attempts=1, wait_multiplier=0
        )

        with pytest.raises(CollaboratorTimeoutError):
            await execution.get_instance_health("web-1")

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self, backend):
        """Test non-transient errors propagate after one attempt."""
        backend.create_instance.side_effect = ValueError("bad template")
        execution = ExecutionClient(backend, max_attempts=3, wait_multiplier=0)

        with pytest.raises(ValueError):
            await execution.create_instance(make_revision(), "web-1")
        assert backend.create_instance.await_count == 1


class TestInMemoryBackend:
    """Test cases for the simulated backend."""

    @pytest.mark.asyncio
    async def test_ready_after_polls(self):
        """Test instances turn ready after the configured polls."""
        backend = InMemoryBackend(ready_after_polls=2)
        await backend.create_instance(make_revision(), "web-1")

        assert await backend.get_instance_health("web-1") == HealthSignal.NOT_READY
        assert await backend.get_instance_health("web-1") == HealthSignal.READY

    @pytest.mark.asyncio
    async def test_create_and_delete_are_idempotent(self):
        """Test repeated creates and deletes do not change the outcome."""
        backend = InMemoryBackend()
        revision = make_revision()

        await backend.create_instance(revision, "web-1")
        await backend.create_instance(revision, "web-1")
        assert backend.count() == 1

        await backend.delete_instance("web-1")
        await backend.delete_instance("web-1")
        assert backend.count() == 0
        assert [s.operation for s in backend.history] == ["create", "delete"]

    @pytest.mark.asyncio
    async def test_unknown_instance_health(self):
        """Test an instance the backend never saw reports Unknown."""
        backend = InMemoryBackend()

        assert await backend.get_instance_health("missing") == HealthSignal.UNKNOWN


class TestKubernetesPodBackend:
    """Test cases for the Kubernetes pod backend."""

    @pytest.fixture
    def core_v1(self):
        """Mock core API client."""
        return MagicMock(spec=client.CoreV1Api)

    @pytest.fixture
    def pod_backend(self, core_v1):
        """Pod backend in the rollouts namespace."""
        return KubernetesPodBackend(core_v1, namespace="rollouts")

    def test_build_pod(self, pod_backend):
        """Test the pod manifest carries the template container and labels."""
        revision = make_revision(
            {"image": "web:1", "env": {"MODE": "canary"}, "ports": [{"container_port": 8080}]}
        )

        pod = pod_backend.build_pod(revision, "web-1")

        container = pod.spec.containers[0]
        assert pod.metadata.name == "web-1"
        assert pod.metadata.namespace == "rollouts"
        assert pod.metadata.labels["revision"] == revision.id
        assert container.image == "web:1"
        assert container.env[0].name == "MODE"
        assert container.ports[0].container_port == 8080

    def test_build_pod_requires_image(self, pod_backend):
        """Test a template without an image is rejected."""
        with pytest.raises(ValueError):
            pod_backend.build_pod(make_revision({"command": ["run"]}), "web-1")

    @pytest.mark.asyncio
    async def test_create_existing_pod(self, pod_backend, core_v1):
        """Test creating a pod that already exists succeeds."""
        core_v1.create_namespaced_pod.side_effect = ApiException(status=409, reason="Conflict")

        assert await pod_backend.create_instance(make_revision(), "web-1") == "web-1"

    @pytest.mark.asyncio
    async def test_create_server_error_is_transient(self, pod_backend, core_v1):
        """Test API server errors are transient."""
        core_v1.create_namespaced_pod.side_effect = ApiException(status=503, reason="Unavailable")

        with pytest.raises(TransientError):
            await pod_backend.create_instance(make_revision(), "web-1")

    @pytest.mark.asyncio
    async def test_delete_missing_pod(self, pod_backend, core_v1):
        """Test deleting a pod that is gone succeeds."""
        core_v1.delete_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")

        await pod_backend.delete_instance("web-1")

        core_v1.delete_namespaced_pod.assert_called_once_with("web-1", "rollouts")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "phase,ready,expected",
        [
            ("Running", "True", HealthSignal.READY),
            ("Running", "False", HealthSignal.NOT_READY),
            ("Failed", "False", HealthSignal.NOT_READY),
        ],
    )
    async def test_health_from_ready_condition(self, pod_backend, core_v1, phase, ready, expected):
        """Test pod health follows the Ready condition and terminal phases."""
        core_v1.read_namespaced_pod_status.return_value = client.V1Pod(
            status=client.V1PodStatus(
                phase=phase,
                conditions=[client.V1PodCondition(type="Ready", status=ready)],
            )
        )

        assert await pod_backend.get_instance_health("web-1") == expected

    @pytest.mark.asyncio
    async def test_health_of_missing_pod(self, pod_backend, core_v1):
        """Test a missing pod reports Unknown."""
        core_v1.read_namespaced_pod_status.side_effect = ApiException(status=404)

        assert await pod_backend.get_instance_health("web-1") == HealthSignal.UNKNOWN
