"""Canary analysis engine for metric-gated progressive rollouts."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from . import instrumentation
from .errors import MetricsProviderError, RolloutError
from .events import EventBus, EventType, ResourceType, WatchEvent
from .leases import KeyLeases
from .metrics import MetricsProvider
from .models import CanaryDecision, CanaryRun, MetricSample, RolloutPhase
from .rollout import RolloutOrchestrator
from .store import StateStore

logger = logging.getLogger(__name__)


class CanaryAnalysisEngine:
    """
    Periodic metric analysis for canary rollouts.

    Implements the analysis cycle:
    1. Every interval, query each declared metric over its window
    2. All metrics passing advances the canary one step
    3. A failing metric increments the consecutive failure counter; reaching
       the threshold aborts the canary
    4. A metrics provider error holds without touching the counter

    One timer task runs per workload with an active canary. Timers hold the
    workload lease while evaluating so they never race the reconcile workers.
    """

    def __init__(
        self,
        store: StateStore,
        orchestrator: RolloutOrchestrator,
        provider: MetricsProvider,
        leases: KeyLeases,
        bus: Optional[EventBus] = None,
        enqueue: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize canary analysis engine.

        Args:
            store: State store client
            orchestrator: Orchestrator applying analysis decisions
            provider: Metrics provider
            leases: Per-workload leases shared with the controller
            bus: Event bus announcing rollout transitions
            enqueue: Callback asking the controller to reconcile a workload
            clock: Time source for samples
        """
        self.store = store
        self.orchestrator = orchestrator
        self.provider = provider
        self.leases = leases
        self.bus = bus
        self.enqueue = enqueue
        self.clock = clock

        self._timers: dict[str, asyncio.Task] = {}

    async def evaluate(self, run: CanaryRun, workload: str, threshold: int) -> CanaryDecision:
        """
        Evaluate every metric of a canary run once.

        The run's samples, failure counter and evaluation time are updated in
        place.

        Args:
            run: Canary run to evaluate
            workload: Workload the metrics are scoped to
            threshold: Consecutive failures that abort the canary

        Returns:
            Advance, Hold or Abort
        """
        now = self.clock()
        run.last_evaluated_at = now
        failed = []

        for check in run.metrics:
            try:
                value = await self.provider.query(check.name, check.window_seconds, workload)
            except MetricsProviderError as e:
                logger.warning(f"Metric {check.name} unavailable for {workload}: {e}")
                run.samples.append(
                    MetricSample(metric=check.name, passed=False, timestamp=now, error=str(e))
                )
                self._trim_samples(run, now)
                return CanaryDecision.HOLD

            passed = check.passes(value)
            run.samples.append(
                MetricSample(metric=check.name, value=value, passed=passed, timestamp=now)
            )
            if not passed:
                failed.append(f"{check.name}={value:g}")

        self._trim_samples(run, now)

        if not failed:
            run.consecutive_failures = 0
            logger.info(f"Canary analysis for {workload} passed at {run.weight}%")
            return CanaryDecision.ADVANCE

        run.consecutive_failures += 1
        logger.warning(
            f"Canary analysis for {workload} failed ({', '.join(failed)}), "
            f"{run.consecutive_failures}/{threshold} consecutive failures"
        )
        if run.consecutive_failures >= threshold:
            return CanaryDecision.ABORT
        return CanaryDecision.HOLD

    def _trim_samples(self, run: CanaryRun, now: datetime) -> None:
        """Drop samples older than the widest analysis window."""
        window = max((m.window_seconds for m in run.metrics), default=0)
        cutoff = now - timedelta(seconds=window)
        run.samples = [s for s in run.samples if s.timestamp >= cutoff]

    async def run_once(self, workload: str) -> Optional[CanaryDecision]:
        """
        Evaluate and apply one analysis round under the workload lease.

        Args:
            workload: Workload key

        Returns:
            Decision, or None if the workload is not in canary analysis
        """
        async with self.leases.hold(workload):
            spec = await self.store.get_spec(workload)
            state = await self.store.get_rollout_state(workload)
            if (
                spec is None
                or state is None
                or spec.policy.canary is None
                or state.canary is None
                or state.phase != RolloutPhase.ANALYZING
            ):
                return None

            decision = await self.evaluate(state.canary, workload, spec.policy.canary.threshold)
            instrumentation.canary_evaluations_total.labels(decision=decision.value).inc()
            await self.orchestrator.apply_analysis(state, decision)

        if self.enqueue is not None:
            self.enqueue(workload)
        return decision

    async def _interval(self, workload: str) -> Optional[int]:
        spec = await self.store.get_spec(workload)
        state = await self.store.get_rollout_state(workload)
        if spec is None or spec.policy.canary is None or state is None or state.canary is None:
            return None
        return spec.policy.canary.interval_seconds

    async def _timer_loop(self, workload: str) -> None:
        """Evaluate a workload's canary every interval until the run ends."""
        try:
            while True:
                interval = await self._interval(workload)
                if interval is None:
                    logger.info(f"Canary timer for {workload} finished")
                    break

                await asyncio.sleep(interval)

                try:
                    await self.run_once(workload)
                except RolloutError as e:
                    logger.warning(f"Canary analysis round for {workload} failed: {e}")
                except Exception as e:
                    logger.error(f"Error in canary timer for {workload}: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.debug(f"Canary timer for {workload} cancelled")
        finally:
            if self._timers.get(workload) is asyncio.current_task():
                del self._timers[workload]

    def ensure_timer(self, workload: str) -> bool:
        """
        Start the analysis timer of a workload if it is not running.

        A timer lives exactly as long as the rollout state carries a canary
        run. Paused rollouts keep theirs and the timer idles until analysis
        resumes; Failed and RolledBack rollouts have none, so the timer stops.

        Returns:
            True if a timer was started
        """
        task = self._timers.get(workload)
        if task is not None and not task.done():
            return False
        self._timers[workload] = asyncio.create_task(self._timer_loop(workload))
        logger.info(f"Started canary timer for {workload}")
        return True

    def stop_timer(self, workload: str) -> None:
        """Stop the analysis timer of a workload."""
        task = self._timers.get(workload)
        if task is None:
            return
        # A timer applying its own abort exits on its next interval check.
        if task is asyncio.current_task():
            return
        task.cancel()
        del self._timers[workload]

    def has_timer(self, workload: str) -> bool:
        task = self._timers.get(workload)
        return task is not None and not task.done()

    def _handle_rollout_event(self, event: WatchEvent) -> None:
        if event.event_type == EventType.DELETED or not event.object.get("canary"):
            self.stop_timer(event.workload)
        else:
            self.ensure_timer(event.workload)

    async def start(self) -> None:
        """Subscribe to rollout transitions and resume timers of active canaries."""
        if self.bus is not None:
            self.bus.register_handler(ResourceType.ROLLOUT, self._handle_rollout_event)

        for workload in await self.store.list_workloads():
            state = await self.store.get_rollout_state(workload)
            if state is not None and state.canary is not None:
                self.ensure_timer(workload)

    async def stop_all(self) -> None:
        """Cancel every timer."""
        if self.bus is not None:
            self.bus.unregister_handler(ResourceType.ROLLOUT, self._handle_rollout_event)

        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
