"""Taskcycle phase controller: the single control loop that owns all state."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable

from taskcycle.collaborators import (
    ContentOrganizer,
    DeploymentExecutor,
    RepositoryIntegrator,
)
from taskcycle.constants import (
    DECISION_LEARNING_REVERSION,
    TERMINAL_REASON_ALL_JOBS_TERMINAL,
    TERMINAL_REASON_CYCLE_CAP,
)
from taskcycle.decisions import DecisionSource
from taskcycle.models import (
    PHASE_INTEGRATION,
    PHASE_JOBS,
    CollaboratorError,
    JobDescriptor,
    PersistenceError,
    PhaseState,
    RunSummary,
    SchedulerConfig,
    StepOutcome,
    WorkItem,
)
from taskcycle.rescan import PeriodicRescan
from taskcycle.rotator import TaskRotator
from taskcycle.state import _append_state_history, _write_state
from taskcycle.tracker import JobTracker
from taskcycle.utils import _append_log, _compact_log_text, _log_warning


class PhaseController:
    """Drives ``phase1 -> phase2 -> phase3 <-> phase2_learning``.

    Each call to :meth:`step` performs one cycle.  Work selection is
    delegated to the :class:`TaskRotator` and every job mutation goes through
    the :class:`JobTracker`; the controller itself only mutates
    :class:`PhaseState`.  Results from the background re-scan arrive over a
    queue and are folded in at the start of a cycle.
    """

    def __init__(
        self,
        rotator: TaskRotator,
        tracker: JobTracker,
        config: SchedulerConfig,
        decisions: DecisionSource,
        *,
        organizer: ContentOrganizer,
        integrator: RepositoryIntegrator,
        executor: DeploymentExecutor,
        repo_root: Path | None = None,
        state_path: Path | None = None,
        phase: PhaseState | None = None,
        rescan: PeriodicRescan | None = None,
        rescan_active: bool = False,
        history: list[dict[str, Any]] | None = None,
    ) -> None:
        self.rotator = rotator
        self.tracker = tracker
        self.config = config
        self.decisions = decisions
        self.organizer = organizer
        self.integrator = integrator
        self.executor = executor
        self.repo_root = repo_root
        self.state_path = state_path
        self.phase = phase if phase is not None else PhaseState()
        self.rescan = rescan
        self.rescan_active = rescan_active
        self.history: list[dict[str, Any]] = list(history or [])
        self.last_step_idle = False

    # -- logging -----------------------------------------------------------

    def _log(self, message: str) -> None:
        if self.repo_root is None:
            return
        try:
            _append_log(self.repo_root, message)
        except OSError as exc:
            _log_warning(None, f"failed to append orchestrator log: {exc}")

    def _warn(self, message: str) -> None:
        _log_warning(self.repo_root, message)

    # -- collaborator calls ------------------------------------------------

    def _invoke(self, description: str, action: Callable[[], bool]) -> bool:
        try:
            succeeded = bool(action())
        except CollaboratorError as exc:
            self._warn(
                f"{description} failed, no progress this cycle: {_compact_log_text(str(exc))}"
            )
            return False
        if not succeeded:
            self._log(f"{description} reported no progress")
        return succeeded

    # -- transitions -------------------------------------------------------

    def _enter_integration(self) -> None:
        self.phase.current_phase = PHASE_INTEGRATION
        self.phase.learning_mode = False

    def _enter_jobs_phase(self) -> None:
        self.phase.current_phase = PHASE_JOBS
        self.phase.learning_mode = False
        self.phase.learning_cycles_remaining = 0
        self._start_rescan()

    def _enter_learning(self, budget: int, *, reason: str) -> str:
        stuck = self.tracker.stuck_job_ids()
        self.phase.current_phase = PHASE_INTEGRATION
        self.phase.learning_mode = True
        self.phase.learning_cycles_remaining = int(budget)
        focus = ", ".join(str(job_id) for job_id in sorted(stuck)) or "none"
        return f"{reason}; learning for {budget} cycles (stuck jobs: {focus})"

    def _start_rescan(self) -> None:
        self.rescan_active = True
        if self.rescan is not None and self.config.rescan_enabled and not self.rescan.active:
            self.rescan.start()
            self._log(
                f"periodic re-scan started (interval={self.rescan.interval_seconds:g}s)"
            )

    def _drain_rescan(self) -> None:
        if self.rescan is None:
            return
        for result in self.rescan.drain():
            if result.error:
                self._warn(f"periodic re-scan failed: {result.error}")
                continue
            added = self.rotator.enqueue_topics(result.topics)
            self._log(
                f"periodic re-scan at {result.discovered_at}: "
                f"{len(result.topics)} topics found, {added} queued"
            )

    # -- per-phase work ----------------------------------------------------

    def _step_acquisition(self) -> tuple[str, WorkItem | None]:
        item = self.rotator.next_endpoint()
        if item is None:
            self._enter_integration()
            return ("acquisition queue empty", None)
        endpoint = str(item.value)
        organized = self._invoke(
            f"organizing {endpoint}", lambda: self.organizer.organize(endpoint)
        )
        message = f"{'organized' if organized else 'skipped'} {endpoint}"
        if len(self.rotator.endpoints) == 0:
            self._enter_integration()
            message = f"{message}; acquisition queue drained"
        return (message, item)

    def _step_integration(self) -> tuple[str, WorkItem | None]:
        item = self.rotator.next_integration()
        if item is None:
            self._enter_jobs_phase()
            return ("integration queues empty", None)
        value = str(item.value)
        if item.kind == "repository":
            done = self._invoke(
                f"integrating repository {value}",
                lambda: self.integrator.integrate_repository(value),
            )
            message = f"{'integrated' if done else 'skipped'} repository {value}"
        else:
            done = self._invoke(
                f"searching topic {value}", lambda: self.integrator.search_topic(value)
            )
            message = f"{'searched' if done else 'skipped'} topic {value}"
        if self.rotator.integration_exhausted():
            self._enter_jobs_phase()
            message = f"{message}; integration queues drained"
        return (message, item)

    def _step_learning(self) -> tuple[str, WorkItem | None]:
        item = self.rotator.next_topic()
        if item is not None:
            topic = str(item.value)
            self._invoke(
                f"learning topic {topic}", lambda: self.integrator.search_topic(topic)
            )
            message = f"learning topic {topic}"
        else:
            message = "learning cycle with no pending topic"
        self.phase.learning_cycles_remaining -= 1
        if self.phase.learning_cycles_remaining <= 0:
            self.phase.current_phase = PHASE_JOBS
            self.phase.learning_mode = False
            self.phase.learning_cycles_remaining = 0
            reset = self.tracker.reset_stuck_jobs()
            message = f"{message}; learning complete, reset stuck jobs {sorted(reset)}"
        else:
            message = f"{message} ({self.phase.learning_cycles_remaining} learning cycles remaining)"
        return (message, item)

    def _deploy(self, job_id: int) -> str:
        descriptor = self.rotator.jobs.get(job_id) or JobDescriptor(id=job_id, title="")
        try:
            result = self.executor.deploy(descriptor)
        except CollaboratorError as exc:
            self.tracker.mark_execution_error(job_id)
            self._warn(f"deployment of job {job_id} failed: {exc}")
            return "deployment error"
        progress = self.tracker.mark_real_world(job_id, result.succeeded)
        if result.succeeded:
            return f"deployed, status={progress.status}, value={progress.value_generated:g}"
        return "deployment failed, needs improvement"

    def _step_jobs(self) -> tuple[str, WorkItem | None]:
        stuck = self.tracker.stuck_job_ids()
        if len(stuck) >= self.config.stuck_jobs_threshold:
            return (
                self._enter_learning(
                    self.config.learning_cycles,
                    reason=f"{len(stuck)} jobs stuck",
                ),
                None,
            )

        item = self.rotator.next_job(self.tracker.progress)
        if item is None:
            self.last_step_idle = True
            return ("no job work remaining", None)

        job_id = int(item.value)
        result = self.tracker.visit(job_id)
        parts = [f"job {job_id} visited, status={result.status}"]
        if result.time_limited:
            parts.append("time limit reached")
        elif result.became_stuck:
            parts.append("job is stuck")
        # A sandbox success stays pending deployment until the job goes live.
        record = self.tracker.progress[job_id]
        if record.sandbox_success and not self.tracker.is_terminal(job_id):
            parts.append(self._deploy(job_id))

        if self.tracker.stuck_job_ids() and self.decisions.decide(
            DECISION_LEARNING_REVERSION, self.config.learning_reversion_probability
        ):
            parts.append(
                self._enter_learning(
                    self.config.random_reversion_learning_cycles,
                    reason="random learning reversion",
                )
            )
        return ("; ".join(parts), item)

    # -- public API --------------------------------------------------------

    def step(self) -> StepOutcome:
        self._drain_rescan()
        self.last_step_idle = False
        phase_before = self.phase.label
        cycle = self.phase.cycle_count + 1

        if phase_before == "phase1":
            message, item = self._step_acquisition()
        elif phase_before == "phase2_learning":
            message, item = self._step_learning()
        elif phase_before == "phase2":
            message, item = self._step_integration()
        else:
            message, item = self._step_jobs()

        self.phase.cycle_count = cycle
        phase_after = self.phase.label
        outcome = StepOutcome(
            cycle=cycle,
            phase_before=phase_before,
            phase_after=phase_after,
            transitioned=phase_before != phase_after,
            message=message,
            work_item=item,
        )
        self._log(f"cycle {cycle}: {phase_before} -> {phase_after}: {message}")
        self._record(outcome)
        return outcome

    def run(
        self,
        *,
        max_cycles: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_step: Callable[[StepOutcome], None] | None = None,
    ) -> RunSummary:
        limit = int(max_cycles) if max_cycles else self.config.max_total_cycles
        outcomes: list[StepOutcome] = []
        terminal_reason = TERMINAL_REASON_CYCLE_CAP
        if self.rescan_active:
            self._start_rescan()
        try:
            for index in range(limit):
                if index > 0 and self.config.cycle_pause_seconds > 0:
                    sleep(self.config.cycle_pause_seconds)
                outcome = self.step()
                outcomes.append(outcome)
                if on_step is not None:
                    on_step(outcome)
                if self.last_step_idle:
                    terminal_reason = TERMINAL_REASON_ALL_JOBS_TERMINAL
                    break
        finally:
            if self.rescan is not None:
                self.rescan.stop()
        summary = self.summary(terminal_reason, outcomes)
        self._log(
            f"run halted ({terminal_reason}) after {summary.total_cycles} cycles: "
            f"operational={summary.operational_jobs}, stuck={summary.stuck_jobs}, "
            f"value={summary.total_value:g}"
        )
        return summary

    def summary(
        self,
        terminal_reason: str,
        outcomes: list[StepOutcome] | None = None,
    ) -> RunSummary:
        return RunSummary(
            total_cycles=self.phase.cycle_count,
            final_phase=self.phase.label,
            terminal_reason=terminal_reason,
            job_count=len(self.rotator.jobs),
            operational_jobs=len(self.tracker.operational_job_ids()),
            stuck_jobs=len(self.tracker.stuck_job_ids()),
            total_value=self.tracker.total_value(),
            outcomes=tuple(outcomes or ()),
        )

    # -- snapshots ---------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        rotator_snapshot = self.rotator.snapshot()
        return {
            "phase": {
                "current_phase": self.phase.current_phase,
                "cycle_count": self.phase.cycle_count,
                "learning_mode": self.phase.learning_mode,
                "learning_cycles_remaining": self.phase.learning_cycles_remaining,
            },
            "current_job": self.rotator.current_job,
            "queues": rotator_snapshot["queues"],
            "seen": rotator_snapshot["seen"],
            "rescan_active": self.rescan_active,
            "job_progress": {
                str(job_id): progress.to_payload()
                for job_id, progress in self.tracker.progress.items()
            },
            "history": self.history,
        }

    def _record(self, outcome: StepOutcome) -> None:
        if self.state_path is None:
            return
        payload = self.snapshot()
        _append_state_history(
            payload,
            cycle=outcome.cycle,
            phase_before=outcome.phase_before,
            phase_after=outcome.phase_after,
            summary=outcome.message,
        )
        self.history = payload["history"]
        try:
            _write_state(self.state_path, payload)
        except PersistenceError as exc:
            self._warn(str(exc))
