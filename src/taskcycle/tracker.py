"""Per-job progress tracking for the job-execution phase."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping

from taskcycle.constants import (
    DECISION_PROGRESS,
    DECISION_SANDBOX_SUCCESS,
    DEFAULT_JOB_VALUE,
    JOB_VALUE_TABLE,
)
from taskcycle.decisions import DecisionSource
from taskcycle.models import (
    TERMINAL_JOB_STATUSES,
    JobDescriptor,
    JobProgress,
    JobStatus,
    PersistenceError,
    SchedulerConfig,
    VisitResult,
)
from taskcycle.registry import index_jobs
from taskcycle.state import _write_job_progress_record
from taskcycle.utils import _log_warning, _utc_now

# Statuses a visit moves back to "experimenting" before rolling for progress.
_RESTARTABLE_STATUSES = frozenset(
    {JobStatus.PENDING, JobStatus.NEEDS_IMPROVEMENT, JobStatus.EXECUTION_ERROR}
)


def job_value(job_id: int) -> float:
    return JOB_VALUE_TABLE.get(job_id, DEFAULT_JOB_VALUE)


class JobTracker:
    """Owns the mutable ``JobProgress`` records, one per job id.

    Every mutation is followed by a best-effort write of the job's progress
    record when a workspace root is configured.  A failed write is reported
    and the in-memory record is kept as is.
    """

    def __init__(
        self,
        jobs: Iterable[JobDescriptor],
        config: SchedulerConfig,
        decisions: DecisionSource,
        *,
        repo_root: Path | None = None,
    ) -> None:
        self.jobs = index_jobs(jobs)
        self.config = config
        self.decisions = decisions
        self.repo_root = repo_root
        self._progress: dict[int, JobProgress] = {}

    @property
    def progress(self) -> Mapping[int, JobProgress]:
        return self._progress

    def is_continuous(self, job_id: int) -> bool:
        return job_id in self.config.continuous_jobs

    def ensure(self, job_id: int) -> JobProgress:
        progress = self._progress.get(job_id)
        if progress is None:
            progress = JobProgress(job_id=job_id)
            self._progress[job_id] = progress
            self._persist(job_id)
        return progress

    def restore(self, records: Mapping[int, JobProgress]) -> None:
        self._progress = {job_id: records[job_id] for job_id in sorted(records)}

    def visit(self, job_id: int) -> VisitResult:
        progress = self.ensure(job_id)
        if progress.status in _RESTARTABLE_STATUSES:
            progress.status = JobStatus.EXPERIMENTING
        progress.cycles_spent += 1
        progress.last_activity = _utc_now()

        # Deployed jobs keep their status; no rolls, no time limit.
        if progress.status in TERMINAL_JOB_STATUSES:
            self._persist(job_id)
            return VisitResult(
                job_id=job_id,
                made_progress=False,
                sandbox_success=False,
                became_stuck=False,
                time_limited=False,
                status=progress.status,
            )

        if (
            not self.is_continuous(job_id)
            and progress.cycles_spent >= self.config.max_cycles_per_job
        ):
            progress.status = JobStatus.TIME_LIMIT_REACHED
            self._persist(job_id)
            return VisitResult(
                job_id=job_id,
                made_progress=False,
                sandbox_success=False,
                became_stuck=False,
                time_limited=True,
                status=progress.status,
            )

        made_progress = self.decisions.decide(
            DECISION_PROGRESS, self.config.progress_probability
        )
        sandbox_success = False
        if made_progress:
            progress.stuck_counter = 0
            if progress.status == JobStatus.STUCK:
                progress.status = JobStatus.EXPERIMENTING
            if self.decisions.decide(
                DECISION_SANDBOX_SUCCESS, self.config.sandbox_success_probability
            ):
                sandbox_success = True
                progress.sandbox_success = True
                progress.status = JobStatus.READY_FOR_REAL_WORLD
        else:
            progress.stuck_counter += 1

        became_stuck = False
        if progress.stuck_counter >= self.config.max_stuck_cycles:
            became_stuck = progress.status != JobStatus.STUCK
            progress.status = JobStatus.STUCK

        self._persist(job_id)
        return VisitResult(
            job_id=job_id,
            made_progress=made_progress,
            sandbox_success=sandbox_success,
            became_stuck=became_stuck,
            time_limited=False,
            status=progress.status,
        )

    def mark_real_world(self, job_id: int, succeeded: bool) -> JobProgress:
        progress = self.ensure(job_id)
        if succeeded:
            progress.real_world_success = True
            progress.value_generated += job_value(job_id)
            if self.is_continuous(job_id):
                progress.status = JobStatus.RUNNING_CONTINUOUS
            else:
                progress.status = JobStatus.OPERATIONAL
        elif progress.status != JobStatus.RUNNING_CONTINUOUS:
            progress.status = JobStatus.NEEDS_IMPROVEMENT
        self._persist(job_id)
        return progress

    def mark_execution_error(self, job_id: int) -> JobProgress:
        progress = self.ensure(job_id)
        if progress.status not in TERMINAL_JOB_STATUSES:
            progress.status = JobStatus.EXECUTION_ERROR
        self._persist(job_id)
        return progress

    def reset_stuck_jobs(self) -> list[int]:
        reset: list[int] = []
        for job_id, progress in self._progress.items():
            if progress.status != JobStatus.STUCK:
                continue
            progress.status = JobStatus.EXPERIMENTING
            progress.stuck_counter = 0
            reset.append(job_id)
            self._persist(job_id)
        return reset

    # -- queries -----------------------------------------------------------

    def stuck_job_ids(self) -> list[int]:
        return [
            job_id
            for job_id, progress in self._progress.items()
            if progress.status == JobStatus.STUCK
        ]

    def is_terminal(self, job_id: int) -> bool:
        progress = self._progress.get(job_id)
        return progress is not None and progress.status in TERMINAL_JOB_STATUSES

    def operational_job_ids(self) -> list[int]:
        return [
            job_id
            for job_id, progress in self._progress.items()
            if progress.real_world_success
        ]

    def total_value(self) -> float:
        return sum(progress.value_generated for progress in self._progress.values())

    # -- persistence -------------------------------------------------------

    def _persist(self, job_id: int) -> None:
        if self.repo_root is None:
            return
        try:
            _write_job_progress_record(
                self.repo_root, self.jobs.get(job_id), self._progress[job_id]
            )
        except PersistenceError as exc:
            _log_warning(self.repo_root, str(exc))
