"""Rollout control plane resource models."""

import hashlib
import json
import math
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StrategyKind(str, Enum):
    """Update strategy."""

    ROLLING = "rolling"
    CANARY = "canary"


class RolloutPhase(str, Enum):
    """Rollout state machine phase."""

    IDLE = "Idle"
    PROGRESSING = "Progressing"
    PAUSED = "Paused"
    ANALYZING = "Analyzing"
    PROMOTING = "Promoting"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


ACTIVE_PHASES = frozenset(
    {RolloutPhase.PROGRESSING, RolloutPhase.ANALYZING, RolloutPhase.PROMOTING}
)
SETTLED_PHASES = frozenset({RolloutPhase.IDLE, RolloutPhase.COMPLETED})
HALTED_PHASES = frozenset({RolloutPhase.FAILED, RolloutPhase.ROLLED_BACK})


class InstancePhase(str, Enum):
    """Replica instance lifecycle phase."""

    PENDING = "Pending"
    READY = "Ready"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class HealthSignal(str, Enum):
    """Health reported by the execution collaborator."""

    READY = "Ready"
    NOT_READY = "NotReady"
    UNKNOWN = "Unknown"


class ActionKind(str, Enum):
    """Reconcile action kind."""

    CREATE = "create"
    DELETE = "delete"
    MARK_REVISION = "mark_revision"


class CanaryDecision(str, Enum):
    """Outcome of one canary analysis evaluation."""

    ADVANCE = "Advance"
    HOLD = "Hold"
    ABORT = "Abort"


def compute_template_hash(payload: dict[str, Any]) -> str:
    """
    Compute a content hash for a template payload.

    Args:
        payload: Template payload

    Returns:
        Hex sha256 digest of the canonical JSON encoding
    """
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def resolve_int_or_percent(value: Union[int, str], total: int, round_up: bool) -> int:
    """
    Resolve an absolute or percentage value against a replica total.

    Args:
        value: Absolute count or percentage string such as "25%"
        total: Replica total the percentage applies to
        round_up: Round fractional results up instead of down

    Returns:
        Absolute count
    """
    if isinstance(value, int):
        return value
    percent = int(value.rstrip("%"))
    scaled = total * percent / 100
    return math.ceil(scaled) if round_up else math.floor(scaled)


class TemplateSpec(BaseModel):
    """Workload template: content hash plus opaque payload."""

    hash: str = Field(..., min_length=1, description="Content hash used for deduplication")
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TemplateSpec":
        """Build a template whose hash is computed from the payload."""
        return cls(hash=compute_template_hash(payload), payload=payload)


class MetricCheck(BaseModel):
    """A metric evaluated during canary analysis."""

    name: str
    window_seconds: int = Field(default=60, ge=1)
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def passes(self, value: float) -> bool:
        """Check a value against the inclusive threshold range."""
        if self.min_value is not None and value < self.min_value:
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        return True


class CanaryPolicy(BaseModel):
    """Metric-gated promotion settings."""

    step_weight: int = Field(default=10, ge=1, le=100)
    max_weight: int = Field(default=50, ge=1, le=100)
    interval_seconds: int = Field(default=60, ge=1)
    threshold: int = Field(default=5, ge=1)
    metrics: list[MetricCheck] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_weights(self) -> "CanaryPolicy":
        if self.step_weight > self.max_weight:
            raise ValueError("step_weight must not exceed max_weight")
        return self


class UpdatePolicy(BaseModel):
    """How a workload moves between revisions."""

    strategy: StrategyKind = StrategyKind.ROLLING
    max_surge: Union[int, str] = 1
    max_unavailable: Union[int, str] = 0
    progress_deadline_seconds: int = Field(default=600, ge=1)
    revision_history_limit: int = Field(default=10, ge=0)
    canary: Optional[CanaryPolicy] = None

    @field_validator("max_surge", "max_unavailable")
    @classmethod
    def _check_int_or_percent(cls, v: Union[int, str]) -> Union[int, str]:
        if isinstance(v, int):
            if v < 0:
                raise ValueError("must be non-negative")
            return v
        if not v.endswith("%") or not v[:-1].isdigit():
            raise ValueError(f"invalid percentage {v!r}")
        return v

    @model_validator(mode="after")
    def _check_strategy(self) -> "UpdatePolicy":
        if self.strategy == StrategyKind.CANARY and self.canary is None:
            raise ValueError("canary strategy requires a canary policy")
        return self

    def resolve_bounds(self, desired: int) -> tuple[int, int]:
        """
        Resolve surge and unavailable bounds for a replica count.

        Surge rounds up, unavailable rounds down. When both resolve to zero
        the rollout could never make progress, so unavailable becomes 1.

        Returns:
            Tuple of (max_surge, max_unavailable)
        """
        surge = resolve_int_or_percent(self.max_surge, desired, round_up=True)
        unavailable = resolve_int_or_percent(self.max_unavailable, desired, round_up=False)
        if surge == 0 and unavailable == 0:
            unavailable = 1
        return surge, unavailable


class DesiredSpec(BaseModel):
    """Operator-declared desired state of a workload."""

    workload: str = Field(..., min_length=1, max_length=253)
    replicas: int = Field(default=1, ge=0)
    template: TemplateSpec
    policy: UpdatePolicy = Field(default_factory=UpdatePolicy)
    generation: int = 0
    field_owners: dict[str, str] = Field(default_factory=dict)


class Revision(BaseModel):
    """Immutable, content-addressed template snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    workload: str
    template_hash: str
    template: TemplateSpec
    sequence: int
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @staticmethod
    def make_id(workload: str, template_hash: str) -> str:
        """
        Build the revision id for a workload template.

        Client hashes are free-form strings, so the id carries a lower-hex
        digest of the whole hash rather than a prefix of it. Ids stay unique
        per distinct hash and usable in pod names.
        """
        digest = hashlib.sha256(template_hash.encode()).hexdigest()[:10]
        return f"{workload}-{digest}"


class ReplicaInstance(BaseModel):
    """A concrete unit of running work."""

    id: str
    workload: str
    revision_id: str
    phase: InstancePhase = InstancePhase.PENDING
    health: HealthSignal = HealthSignal.UNKNOWN
    consecutive_failures: int = 0
    acknowledged: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_ready(self) -> bool:
        return self.phase == InstancePhase.READY


class MetricSample(BaseModel):
    """Single metric evaluation result."""

    metric: str
    value: Optional[float] = None
    passed: bool
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None


class CanaryRun(BaseModel):
    """Ephemeral analysis state attached to a canary rollout."""

    weight: int = 0
    step_index: int = 0
    consecutive_failures: int = 0
    metrics: list[MetricCheck] = Field(default_factory=list)
    samples: list[MetricSample] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    last_evaluated_at: Optional[datetime] = None


class Condition(BaseModel):
    """Status condition."""

    type: str
    status: bool
    reason: str
    message: str = ""
    last_transition_at: datetime = Field(default_factory=datetime.utcnow)


class RolloutCounters(BaseModel):
    """Surge/unavailable bookkeeping observed on the last tick."""

    total: int = 0
    ready: int = 0
    max_total: int = 0
    min_available: int = 0
    surge_in_use: int = 0
    unavailable_in_use: int = 0


class RolloutState(BaseModel):
    """Single source of truth for whether an update is in flight."""

    workload: str
    phase: RolloutPhase = RolloutPhase.IDLE
    current_revision_id: Optional[str] = None
    target_revision_id: Optional[str] = None
    paused_from: Optional[RolloutPhase] = None
    reason: str = ""
    message: str = ""
    progressing_since: Optional[datetime] = None
    observed_generation: int = 0
    counters: RolloutCounters = Field(default_factory=RolloutCounters)
    traffic_weight: int = 0
    canary: Optional[CanaryRun] = None
    conditions: list[Condition] = Field(default_factory=list)
    revision_peaks: dict[str, int] = Field(default_factory=dict)
    live_history: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    version: int = 0

    @property
    def in_flight(self) -> bool:
        """True while an update has not settled."""
        return self.phase not in SETTLED_PHASES

    def get_condition(self, type_: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == type_:
                return condition
        return None

    def set_condition(self, type_: str, status: bool, reason: str, message: str = "") -> None:
        existing = self.get_condition(type_)
        if existing and existing.status == status and existing.reason == reason:
            existing.message = message
            return
        self.conditions = [c for c in self.conditions if c.type != type_]
        self.conditions.append(
            Condition(type=type_, status=status, reason=reason, message=message)
        )


class Action(BaseModel):
    """Idempotent action emitted by a reconcile."""

    kind: ActionKind
    workload: str
    revision_id: Optional[str] = None
    instance_id: Optional[str] = None


class RolloutStatus(BaseModel):
    """Status report returned by the control surface."""

    workload: str
    phase: RolloutPhase
    reason: str
    message: str
    current_revision: Optional[int] = None
    target_revision: Optional[int] = None
    desired_replicas: int
    counters: RolloutCounters
    traffic_weight: int
    canary_step: Optional[int] = None
    canary_failures: Optional[int] = None
    conditions: list[Condition] = Field(default_factory=list)
    revisions: list[int] = Field(default_factory=list)
