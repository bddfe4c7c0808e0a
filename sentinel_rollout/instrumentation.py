"""Prometheus metrics exported by the rollout controller."""

from prometheus_client import Counter, Gauge, Histogram

reconcile_total = Counter(
    "rollout_reconcile_total",
    "Total reconcile attempts",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "rollout_reconcile_duration_seconds",
    "Reconcile duration in seconds",
    ["kind"],
)

reconcile_actions_total = Counter(
    "rollout_reconcile_actions_total",
    "Instance actions applied by reconciles",
    ["action"],
)

phase_transitions_total = Counter(
    "rollout_phase_transitions_total",
    "Rollout phase transitions",
    ["from_phase", "to_phase"],
)

canary_evaluations_total = Counter(
    "rollout_canary_evaluations_total",
    "Canary analysis evaluations",
    ["decision"],
)

workqueue_depth = Gauge(
    "rollout_workqueue_depth",
    "Keys waiting in the reconcile work queue",
)
