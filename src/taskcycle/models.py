"""Taskcycle data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


def _coerce_probability(value: Any, *, default: float) -> float:
    parsed = _coerce_float(value, default=default)
    if parsed < 0.0:
        return 0.0
    if parsed > 1.0:
        return 1.0
    return parsed


class ParseError(RuntimeError):
    """Raised when a job list yields no entries and no fallback is available."""


class PersistenceError(RuntimeError):
    """Raised when a progress record or snapshot cannot be written."""


class CollaboratorError(RuntimeError):
    """Raised when an external collaborator call fails."""


class StateError(RuntimeError):
    """Raised when a run snapshot cannot be loaded or validated."""


# ---------------------------------------------------------------------------
# Job status vocabulary
# ---------------------------------------------------------------------------


class JobStatus:
    PENDING = "pending"
    EXPERIMENTING = "experimenting"
    STUCK = "stuck"
    READY_FOR_REAL_WORLD = "ready_for_real_world"
    OPERATIONAL = "operational"
    RUNNING_CONTINUOUS = "running_continuous"
    TIME_LIMIT_REACHED = "time_limit_reached"
    NEEDS_IMPROVEMENT = "needs_improvement"
    EXECUTION_ERROR = "execution_error"


JOB_STATUSES: frozenset[str] = frozenset(
    {
        JobStatus.PENDING,
        JobStatus.EXPERIMENTING,
        JobStatus.STUCK,
        JobStatus.READY_FOR_REAL_WORLD,
        JobStatus.OPERATIONAL,
        JobStatus.RUNNING_CONTINUOUS,
        JobStatus.TIME_LIMIT_REACHED,
        JobStatus.NEEDS_IMPROVEMENT,
        JobStatus.EXECUTION_ERROR,
    }
)
TERMINAL_JOB_STATUSES: frozenset[str] = frozenset(
    {JobStatus.OPERATIONAL, JobStatus.RUNNING_CONTINUOUS}
)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobDescriptor:
    id: int
    title: str
    description: tuple[str, ...] = ()


@dataclass
class JobProgress:
    job_id: int
    status: str = JobStatus.PENDING
    cycles_spent: int = 0
    stuck_counter: int = 0
    sandbox_success: bool = False
    real_world_success: bool = False
    value_generated: float = 0.0
    last_activity: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "cycles_spent": self.cycles_spent,
            "stuck_counter": self.stuck_counter,
            "sandbox_success": self.sandbox_success,
            "real_world_success": self.real_world_success,
            "value_generated": self.value_generated,
            "last_activity": self.last_activity,
        }


@dataclass(frozen=True)
class VisitResult:
    job_id: int
    made_progress: bool
    sandbox_success: bool
    became_stuck: bool
    time_limited: bool
    status: str


@dataclass(frozen=True)
class DeploymentResult:
    succeeded: bool
    value_generated: float = 0.0


# ---------------------------------------------------------------------------
# Phases and work items
# ---------------------------------------------------------------------------


PHASE_ACQUISITION = 1
PHASE_INTEGRATION = 2
PHASE_JOBS = 3


@dataclass
class PhaseState:
    current_phase: int = PHASE_ACQUISITION
    cycle_count: int = 0
    learning_mode: bool = False
    learning_cycles_remaining: int = 0

    @property
    def label(self) -> str:
        if self.current_phase == PHASE_INTEGRATION and self.learning_mode:
            return "phase2_learning"
        return f"phase{self.current_phase}"


@dataclass(frozen=True)
class WorkItem:
    kind: str  # "endpoint" | "repository" | "topic" | "job"
    value: str | int


@dataclass(frozen=True)
class StepOutcome:
    cycle: int
    phase_before: str
    phase_after: str
    transitioned: bool
    message: str
    work_item: WorkItem | None = None


@dataclass(frozen=True)
class RunSummary:
    total_cycles: int
    final_phase: str
    terminal_reason: str
    job_count: int
    operational_jobs: int
    stuck_jobs: int
    total_value: float
    outcomes: tuple[StepOutcome, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchedulerConfig:
    max_cycles_per_job: int = 5
    max_stuck_cycles: int = 3
    learning_cycles: int = 10
    stuck_jobs_threshold: int = 3
    continuous_jobs: frozenset[int] = frozenset({13, 14, 15, 16, 17, 21})
    max_total_cycles: int = 20
    cycle_pause_seconds: float = 2.0
    random_reversion_learning_cycles: int = 3
    progress_probability: float = 0.6
    sandbox_success_probability: float = 0.2
    deployment_success_probability: float = 0.7
    learning_reversion_probability: float = 0.1
    rescan_enabled: bool = True
    rescan_interval_seconds: float = 7 * 24 * 60 * 60
    seed: int | None = None


@dataclass(frozen=True)
class WorkSources:
    endpoints: tuple[str, ...]
    repositories: tuple[str, ...]
    topics: tuple[str, ...]
    jobs: tuple[JobDescriptor, ...]
