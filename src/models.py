"""
Data models for the Keycloak migration engine.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class StepStatus(Enum):
    """Per-step status recorded in the checkpoint."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"


class GateVerdict(Enum):
    """Outcome of a validation gate evaluation."""

    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


class WorkerKind(Enum):
    TENANT = "tenant"
    NODE = "node"


# Progress value reported by a worker that failed
FAILED_PROGRESS = -1.0


@dataclass
class MigrationPlan:
    """Ordered list of releases to walk through."""

    current_version: str
    target_version: str
    steps: List[str] = field(default_factory=list)

    @property
    def total_steps(self) -> int:
        return len(self.steps)


@dataclass
class PhaseValidation:
    """Metric thresholds a canary phase must satisfy."""

    error_rate_threshold: float = 0.01
    latency_p99_threshold_ms: float = 500.0
    min_requests: int = 100


@dataclass
class Phase:
    """A single canary phase."""

    name: str
    traffic_percentage: int
    replica_count: int = 1
    duration: float = 3600.0
    validation: PhaseValidation = field(default_factory=PhaseValidation)


@dataclass
class Environment:
    """One side of a blue-green deployment."""

    label: str  # "old" or "new"
    deployment_ref: str  # e.g. "blue", "green"
    traffic_weight: int = 0


@dataclass
class Worker:
    """A concurrent unit of a multi-instance rollout."""

    id: str
    kind: WorkerKind
    progress: float = 0.0  # [0, 1], or FAILED_PROGRESS
    status: str = "pending"  # "pending", "running", "success", "failed"
    error_message: Optional[str] = None


@dataclass(frozen=True)
class TrafficWeightAssignment:
    """Weighted split of traffic between two backends. Weights sum to 100."""

    backend_a: str
    weight_a: int
    backend_b: str
    weight_b: int

    def __post_init__(self):
        for weight in (self.weight_a, self.weight_b):
            if weight < 0 or weight > 100:
                raise ValueError(f"Traffic weight out of range [0, 100]: {weight}")
        if self.weight_a + self.weight_b != 100:
            raise ValueError(
                f"Traffic weights must sum to 100, got "
                f"{self.weight_a} + {self.weight_b}"
            )

    def as_dict(self) -> Dict[str, int]:
        return {self.backend_a: self.weight_a, self.backend_b: self.weight_b}


@dataclass
class StepResult:
    """Result of a single migration step."""

    step: str
    status: str  # "success", "failed", "skipped", "dry_run"
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration_seconds: Optional[float] = None
    attempts: int = 0
    error_message: Optional[str] = None
    rolled_back: bool = False


@dataclass
class RolloutOutcome:
    """Aggregate outcome of a rollout over a plan."""

    success: bool
    completed_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    failed_instances: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
