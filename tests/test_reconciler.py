"""Tests for the reconciler registry and controller."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from sentinel_rollout.errors import StoreUnavailableError, UnknownKindError
from sentinel_rollout.events import EventBus, EventType, ResourceType, WatchEvent
from sentinel_rollout.leases import KeyLeases
from sentinel_rollout.reconciler import (
    Controller,
    ReconcileResult,
    ReconcilerRegistry,
    ResourceKey,
    ResultKind,
)
from sentinel_rollout.workqueue import WorkQueue


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self):
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


def make_controller(reconcile, lister=None, bus=None):
    registry = ReconcilerRegistry()
    registry.register("workload", reconcile, lister)
    clock = ManualClock()
    queue = WorkQueue(backoff_base=1.0, backoff_max=8.0, clock=clock)
    return Controller(registry, queue, KeyLeases(), bus=bus, workers=1, resync_interval=3600)


class TestReconcilerRegistry:
    """Test cases for ReconcilerRegistry."""

    def test_register_and_get(self):
        """Test a registered reconciler is returned for its kind."""
        registry = ReconcilerRegistry()
        reconcile = AsyncMock()
        registry.register("workload", reconcile)

        assert registry.get("workload") is reconcile
        assert registry.kinds() == ["workload"]

    def test_duplicate_kind(self):
        """Test a kind can only be registered once."""
        registry = ReconcilerRegistry()
        registry.register("workload", AsyncMock())

        with pytest.raises(ValueError):
            registry.register("workload", AsyncMock())

    def test_frozen_registry(self):
        """Test registrations are rejected after freezing."""
        registry = ReconcilerRegistry()
        registry.freeze()

        with pytest.raises(RuntimeError):
            registry.register("workload", AsyncMock())

    def test_unknown_kind(self):
        """Test looking up an unregistered kind fails."""
        with pytest.raises(UnknownKindError):
            ReconcilerRegistry().get("job")

    def test_listers(self):
        """Test only kinds with a lister take part in resync."""
        registry = ReconcilerRegistry()
        lister = AsyncMock(return_value=[])
        registry.register("workload", AsyncMock(), lister)
        registry.register("job", AsyncMock())

        assert registry.listers() == {"workload": lister}


class TestResourceKey:
    """Test cases for ResourceKey."""

    def test_round_trip(self):
        """Test a key formats and parses as kind/name."""
        key = ResourceKey("workload", "web")

        assert str(key) == "workload/web"
        assert ResourceKey.parse("workload/web") == key

    @pytest.mark.parametrize("value", ["web", "workload/", ""])
    def test_malformed(self, value):
        """Test keys without a kind or name are rejected."""
        with pytest.raises(ValueError):
            ResourceKey.parse(value)


class TestController:
    """Test cases for Controller.process scheduling."""

    @pytest.mark.asyncio
    async def test_done_is_not_requeued(self):
        """Test a Done result leaves the key out of the queue."""
        reconcile = AsyncMock(return_value=ReconcileResult.done())
        controller = make_controller(reconcile)

        result = await controller.process("workload/web")

        reconcile.assert_awaited_once_with("web")
        assert result.kind == ResultKind.DONE
        assert len(controller.queue) == 0
        assert controller.last_results["workload/web"] is result

    @pytest.mark.asyncio
    async def test_requeue_after_delay(self):
        """Test a requeue with a delay schedules the key without backoff."""
        reconcile = AsyncMock(return_value=ReconcileResult.requeue("tick", after=5.0))
        controller = make_controller(reconcile)

        await controller.process("workload/web")

        assert len(controller.queue) == 1
        assert controller.queue.num_requeues("workload/web") == 0

    @pytest.mark.asyncio
    async def test_requeue_without_delay_backs_off(self):
        """Test requeues without a delay grow the key's backoff."""
        reconcile = AsyncMock(return_value=ReconcileResult.requeue("store busy"))
        controller = make_controller(reconcile)

        await controller.process("workload/web")
        await controller.process("workload/web")

        assert controller.queue.num_requeues("workload/web") == 2

    @pytest.mark.asyncio
    async def test_done_resets_backoff(self):
        """Test a successful reconcile forgets the key's failures."""
        reconcile = AsyncMock(
            side_effect=[ReconcileResult.requeue("store busy"), ReconcileResult.done()]
        )
        controller = make_controller(reconcile)

        await controller.process("workload/web")
        await controller.process("workload/web")

        assert controller.queue.num_requeues("workload/web") == 0

    @pytest.mark.asyncio
    async def test_transient_error_is_requeued(self):
        """Test a transient exception becomes a backoff requeue."""
        reconcile = AsyncMock(side_effect=StoreUnavailableError("db down"))
        controller = make_controller(reconcile)

        result = await controller.process("workload/web")

        assert result.kind == ResultKind.REQUEUE
        assert result.after is None
        assert controller.queue.num_requeues("workload/web") == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_an_error(self):
        """Test an unexpected exception is reported and left for the resync."""
        reconcile = AsyncMock(side_effect=RuntimeError("bug"))
        controller = make_controller(reconcile)

        result = await controller.process("workload/web")

        assert result.kind == ResultKind.ERROR
        assert "bug" in result.reason
        assert len(controller.queue) == 0

    @pytest.mark.asyncio
    async def test_reconcile_holds_lease(self):
        """Test the workload lease is held while reconciling."""
        held = []
        controller = None

        async def reconcile(name):
            held.append(controller.leases.is_held(name))
            return ReconcileResult.done()

        controller = make_controller(reconcile)
        await controller.process("workload/web")

        assert held == [True]
        assert not controller.leases.is_held("web")

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        """Test processing a key of an unregistered kind fails."""
        controller = make_controller(AsyncMock())

        with pytest.raises(UnknownKindError):
            await controller.process("job/nightly")

    @pytest.mark.asyncio
    async def test_resync_enqueues_listed_keys(self):
        """Test resync enqueues every key the listers return."""
        controller = make_controller(AsyncMock(), lister=AsyncMock(return_value=["web", "api"]))

        assert await controller.resync() == 2
        assert len(controller.queue) == 2


class TestControllerLoop:
    """Test cases for the running controller."""

    @pytest.mark.asyncio
    async def test_events_trigger_reconcile(self):
        """Test a spec event is picked up by a worker."""
        bus = EventBus()
        reconciled = asyncio.Event()

        async def reconcile(name):
            reconciled.set()
            return ReconcileResult.done()

        registry = ReconcilerRegistry()
        registry.register("workload", reconcile)
        controller = Controller(registry, WorkQueue(), KeyLeases(), bus=bus, workers=2)
        await controller.start()

        try:
            await bus.emit(
                WatchEvent(
                    event_type=EventType.ADDED,
                    resource_type=ResourceType.SPEC,
                    workload="web",
                    key="web",
                )
            )
            await asyncio.wait_for(reconciled.wait(), timeout=2)
        finally:
            await controller.stop()

        assert controller.last_results["workload/web"].kind == ResultKind.DONE

    @pytest.mark.asyncio
    async def test_start_freezes_registry(self):
        """Test the registry is frozen once the controller runs."""
        registry = ReconcilerRegistry()
        controller = Controller(registry, WorkQueue(), KeyLeases(), workers=1)
        await controller.start()
        await controller.stop()

        with pytest.raises(RuntimeError):
            registry.register("workload", AsyncMock())
