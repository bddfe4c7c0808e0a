"""Tests for the assembled control plane."""

import asyncio

import pytest

from conftest import make_spec

from sentinel_rollout.errors import NoActiveRolloutError, WorkloadNotFoundError
from sentinel_rollout.models import Revision, RolloutPhase
from sentinel_rollout.reconciler import ResultKind
from sentinel_rollout.rollback import RollbackStatus


def rev_id(spec) -> str:
    return Revision.make_id(spec.workload, spec.template.hash)


async def wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def settled_on(plane, revision_id: str):
    async def check() -> bool:
        state = await plane.store.get_rollout_state("web")
        return (
            state is not None
            and state.phase == RolloutPhase.COMPLETED
            and state.current_revision_id == revision_id
        )

    return check


class TestControlPlane:
    """Test cases for the running control plane."""

    @pytest.mark.asyncio
    async def test_spec_change_converges(self, plane):
        """Test workers converge a declared workload and a template change."""
        v1, v2 = make_spec(image="web:1"), make_spec(image="web:2")
        await plane.start()
        try:
            await plane.put_spec(v1)
            await wait_for(settled_on(plane, rev_id(v1)))

            await plane.put_spec(v2)
            await wait_for(settled_on(plane, rev_id(v2)))
        finally:
            await plane.stop()

        assert plane.backend.count(rev_id(v2)) == 6

    @pytest.mark.asyncio
    async def test_rollback_converges(self, plane):
        """Test a rollback completes and its record is marked completed."""
        v1, v2 = make_spec(image="web:1"), make_spec(image="web:2")
        await plane.start()
        try:
            await plane.put_spec(v1)
            await wait_for(settled_on(plane, rev_id(v1)))
            await plane.put_spec(v2)
            await wait_for(settled_on(plane, rev_id(v2)))

            record = await plane.rollback("web")
            await wait_for(settled_on(plane, rev_id(v1)))
        finally:
            await plane.stop()

        assert record.status == RollbackStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_delete_tears_down(self, plane):
        """Test deleting a workload removes its instances."""
        spec = make_spec()
        await plane.start()
        try:
            await plane.put_spec(spec)
            await wait_for(settled_on(plane, rev_id(spec)))

            await plane.delete_spec("web")

            async def gone() -> bool:
                return plane.backend.count() == 0 and (
                    await plane.store.get_rollout_state("web") is None
                )

            await wait_for(gone)
        finally:
            await plane.stop()


class TestOperations:
    """Test cases for operator operations without running workers."""

    @pytest.mark.asyncio
    async def test_status_reports_revisions(self, plane):
        """Test status reports revision sequences and counters."""
        await plane.put_spec(make_spec(replicas=2))
        result = await plane.reconcile_now("web")
        assert result.kind == ResultKind.REQUEUE
        await plane.reconcile_now("web")

        status = await plane.status("web")

        assert status.phase == RolloutPhase.COMPLETED
        assert status.current_revision == 1
        assert status.revisions == [1]
        assert status.counters.total == 2

    @pytest.mark.asyncio
    async def test_status_shows_backoff_reason(self, plane):
        """Test the status message reports why a reconcile is backing off."""

        async def refuse(revision, instance_id):
            raise ConnectionError("runtime unreachable")

        plane.backend.create_instance = refuse
        await plane.put_spec(make_spec(replicas=2))

        result = await plane.reconcile_now("web")
        status = await plane.status("web")

        assert result.kind == ResultKind.REQUEUE
        assert result.after is None
        assert status.message == result.reason
        assert "runtime unreachable" in status.message

    @pytest.mark.asyncio
    async def test_unknown_workload(self, plane):
        """Test operations on an unknown workload raise not found."""
        with pytest.raises(WorkloadNotFoundError):
            await plane.status("missing")
        with pytest.raises(WorkloadNotFoundError):
            await plane.delete_spec("missing")

    @pytest.mark.asyncio
    async def test_pause_settled_workload(self, plane):
        """Test pausing a settled workload is refused."""
        await plane.put_spec(make_spec(replicas=1))
        await plane.reconcile_now("web")
        await plane.reconcile_now("web")

        with pytest.raises(NoActiveRolloutError):
            await plane.pause("web")
