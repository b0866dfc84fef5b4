from __future__ import annotations

import argparse
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from taskcycle.collaborators import (
    SimulatedContentOrganizer,
    SimulatedDeploymentExecutor,
    SimulatedRepositoryIntegrator,
)
from taskcycle.config import _load_scheduler_config, _load_work_sources
from taskcycle.constants import (
    DEFAULT_TOPICS,
    LOCK_STALE_SECONDS,
    TOPICS_FILENAME,
)
from taskcycle.controller import PhaseController
from taskcycle.decisions import RandomDecisionSource
from taskcycle.models import (
    JOB_STATUSES,
    JobStatus,
    ParseError,
    RunSummary,
    SchedulerConfig,
    StateError,
    StepOutcome,
)
from taskcycle.rescan import PeriodicRescan
from taskcycle.rotator import TaskRotator
from taskcycle.state import (
    _acquire_lock,
    _default_state,
    _heartbeat_lock,
    _lock_is_stale,
    _job_progress_record_path,
    _load_state,
    _normalize_state,
    _phase_state_from_snapshot,
    _progress_from_snapshot,
    _read_lock_payload,
    _release_lock,
    _resolve_repo_root,
    _resolve_scaffold_source,
    _resolve_workspace_dir,
    _sync_scaffold_bundle,
    _write_state,
    read_job_progress_record,
)
from taskcycle.tracker import JobTracker
from taskcycle.utils import _append_log, _read_line_list, _utc_now

_STATE_FILE_DEFAULT = ".taskcycle/state.json"
_STATE_FILE_HELP = "Path to taskcycle state JSON (default: .taskcycle/state.json)"


# ---------------------------------------------------------------------------
# Controller assembly
# ---------------------------------------------------------------------------


def _topic_discovery(repo_root: Path) -> Callable[[], list[str]]:
    """Return a discovery callable that re-reads the configured topic list."""
    topics_path = _resolve_workspace_dir(repo_root) / TOPICS_FILENAME

    def _discover() -> list[str]:
        topics = _read_line_list(topics_path)
        return list(DEFAULT_TOPICS if topics is None else topics)

    return _discover


def _build_controller(
    repo_root: Path,
    state_path: Path,
    config: SchedulerConfig,
    *,
    snapshot: dict[str, Any] | None = None,
) -> PhaseController:
    sources = _load_work_sources(repo_root)
    decisions = RandomDecisionSource(config.seed)

    if snapshot is None:
        rotator = TaskRotator(
            sources.endpoints, sources.repositories, sources.topics, sources.jobs
        )
    else:
        queues = snapshot["queues"]
        rotator = TaskRotator(
            queues["endpoints"],
            queues["repositories"],
            queues["topics"],
            sources.jobs,
            current_job=int(snapshot["current_job"]),
            seen=snapshot["seen"],
        )

    tracker = JobTracker(sources.jobs, config, decisions, repo_root=repo_root)
    if snapshot is not None:
        tracker.restore(_progress_from_snapshot(snapshot))

    rescan = None
    if config.rescan_enabled:
        rescan = PeriodicRescan(_topic_discovery(repo_root), config.rescan_interval_seconds)

    return PhaseController(
        rotator,
        tracker,
        config,
        decisions,
        organizer=SimulatedContentOrganizer(repo_root),
        integrator=SimulatedRepositoryIntegrator(repo_root),
        executor=SimulatedDeploymentExecutor(
            decisions, success_probability=config.deployment_success_probability
        ),
        repo_root=repo_root,
        state_path=state_path,
        phase=_phase_state_from_snapshot(snapshot) if snapshot is not None else None,
        rescan=rescan,
        rescan_active=bool(snapshot.get("rescan_active")) if snapshot is not None else False,
        history=list(snapshot.get("history", [])) if snapshot is not None else None,
    )


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------


def _write_run_summary(
    repo_root: Path,
    *,
    state_path: Path,
    started_at: str,
    ended_at: str,
    elapsed_seconds: float,
    max_cycles: int,
    summary: RunSummary,
) -> Path:
    summary_path = _resolve_workspace_dir(repo_root) / "logs" / "run_summary.md"
    lines = [
        "# Taskcycle Run Summary",
        "",
        f"- started_at: `{started_at}`",
        f"- ended_at: `{ended_at}`",
        f"- elapsed_seconds: `{elapsed_seconds:.2f}`",
        f"- state_file: `{state_path}`",
        f"- max_cycles: `{max_cycles}`",
        f"- total_cycles: `{summary.total_cycles}`",
        f"- terminal_reason: `{summary.terminal_reason}`",
        f"- final_phase: `{summary.final_phase}`",
        f"- jobs: `{summary.job_count}`",
        f"- operational_jobs: `{summary.operational_jobs}`",
        f"- stuck_jobs: `{summary.stuck_jobs}`",
        f"- total_value: `{summary.total_value:g}`",
        "",
        "## Cycles",
    ]
    if summary.outcomes:
        lines.extend(
            [
                "| cycle | before | after | transitioned | work | message |",
                "|---|---|---|---|---|---|",
            ]
        )
        for outcome in summary.outcomes:
            work = "-"
            if outcome.work_item is not None:
                work = f"{outcome.work_item.kind}:{outcome.work_item.value}"
            lines.append(
                "| {cycle} | {before} | {after} | {transitioned} | {work} | {message} |".format(
                    cycle=outcome.cycle,
                    before=outcome.phase_before,
                    after=outcome.phase_after,
                    transitioned=outcome.transitioned,
                    work=work.replace("|", "/"),
                    message=outcome.message.replace("|", "/"),
                )
            )
    else:
        lines.append("No cycles were executed.")

    summary_path.parent.mkdir(parents=True, exist_ok=True)
    summary_path.write_text("\n".join(lines).rstrip() + "\n", encoding="utf-8")
    return summary_path


# ---------------------------------------------------------------------------
# CLI command handlers
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    state_path = Path(args.state_file).expanduser().resolve()
    repo_root = _resolve_repo_root(state_path)
    workspace_dir = _resolve_workspace_dir(repo_root)
    created: list[Path] = []

    try:
        for directory in (
            workspace_dir,
            workspace_dir / "logs",
            workspace_dir / "job_results",
            workspace_dir / "artifacts",
        ):
            if not directory.exists():
                directory.mkdir(parents=True, exist_ok=True)
                created.append(directory)
        copied, skipped = _sync_scaffold_bundle(
            _resolve_scaffold_source(), workspace_dir, overwrite=bool(args.force)
        )
    except (OSError, RuntimeError) as exc:
        print(f"taskcycle init: ERROR {exc}", file=sys.stderr)
        return 1

    if state_path.exists() and not args.force:
        try:
            _normalize_state(_load_state(state_path))
        except StateError as exc:
            print(f"taskcycle init: ERROR {exc}", file=sys.stderr)
            return 1
    else:
        sources = _load_work_sources(repo_root)
        state = _default_state()
        state["queues"] = {
            "endpoints": list(sources.endpoints),
            "repositories": list(sources.repositories),
            "topics": list(sources.topics),
        }
        _write_state(state_path, state)
        created.append(state_path)

    _append_log(repo_root, f"init completed; created={len(created)} scaffold_copied={copied}")

    print("taskcycle init")
    print(f"state_file: {state_path}")
    print(f"created_entries: {len(created)}")
    print(f"scaffold_copied_files: {copied}")
    print(f"scaffold_skipped_files: {skipped}")
    for path in created:
        print(f"- {path}")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    if args.max_cycles is not None and args.max_cycles <= 0:
        print("taskcycle run: ERROR --max-cycles must be > 0", file=sys.stderr)
        return 2
    if args.pause is not None and args.pause < 0:
        print("taskcycle run: ERROR --pause must be >= 0", file=sys.stderr)
        return 2

    state_path = Path(args.state_file).expanduser().resolve()
    repo_root = _resolve_repo_root(state_path)
    workspace_dir = _resolve_workspace_dir(repo_root)
    try:
        (workspace_dir / "logs").mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"taskcycle run: ERROR cannot create workspace {workspace_dir}: {exc}", file=sys.stderr)
        return 1

    config = _load_scheduler_config(repo_root)
    overrides: dict[str, Any] = {}
    if args.max_cycles is not None:
        overrides["max_total_cycles"] = int(args.max_cycles)
    if args.pause is not None:
        overrides["cycle_pause_seconds"] = float(args.pause)
    if args.seed is not None:
        overrides["seed"] = int(args.seed)
    if args.no_rescan:
        overrides["rescan_enabled"] = False
    if overrides:
        config = replace(config, **overrides)

    snapshot: dict[str, Any] | None = None
    if args.resume:
        if state_path.exists():
            try:
                snapshot = _normalize_state(_load_state(state_path))
            except StateError as exc:
                print(f"taskcycle run: ERROR {exc}", file=sys.stderr)
                return 1
        else:
            print(
                f"taskcycle run: WARN no state to resume at {state_path}; starting fresh",
                file=sys.stderr,
            )

    lock_path = workspace_dir / "lock"
    lock_ok, lock_msg = _acquire_lock(
        lock_path,
        state_file=state_path,
        command=" ".join(sys.argv),
        stale_seconds=LOCK_STALE_SECONDS,
    )
    if not lock_ok:
        print(f"taskcycle run: ERROR {lock_msg}", file=sys.stderr)
        return 1
    _append_log(repo_root, f"run lock acquired: {lock_msg}")

    try:
        try:
            controller = _build_controller(repo_root, state_path, config, snapshot=snapshot)
        except (OSError, ParseError, StateError) as exc:
            print(f"taskcycle run: ERROR {exc}", file=sys.stderr)
            return 1
        started_at = _utc_now()
        started_monotonic = time.monotonic()

        print("taskcycle run")
        print(f"state_file: {state_path}")
        print(f"max_cycles: {config.max_total_cycles}")
        print(f"resumed: {snapshot is not None}")
        print(f"starting_phase: {controller.phase.label}")
        print(f"seed: {config.seed if config.seed is not None else '<random>'}")
        print(f"rescan: {config.rescan_enabled}")

        def _on_step(outcome: StepOutcome) -> None:
            _heartbeat_lock(lock_path, phase=outcome.phase_after, cycle=outcome.cycle)
            print(
                f"cycle {outcome.cycle}: {outcome.phase_before} -> {outcome.phase_after} "
                f"(transitioned={outcome.transitioned}) {outcome.message}"
            )

        _append_log(repo_root, f"run started at phase {controller.phase.label}")
        summary = controller.run(max_cycles=config.max_total_cycles, on_step=_on_step)
    finally:
        _release_lock(lock_path)

    try:
        summary_path = _write_run_summary(
            repo_root,
            state_path=state_path,
            started_at=started_at,
            ended_at=_utc_now(),
            elapsed_seconds=time.monotonic() - started_monotonic,
            max_cycles=config.max_total_cycles,
            summary=summary,
        )
    except OSError as exc:
        print(f"taskcycle run: WARN failed to write run summary: {exc}", file=sys.stderr)
        summary_path = None

    print(f"taskcycle run: stop ({summary.terminal_reason})")
    print(f"total_cycles: {summary.total_cycles}")
    print(f"final_phase: {summary.final_phase}")
    print(f"operational_jobs: {summary.operational_jobs}/{summary.job_count}")
    print(f"stuck_jobs: {summary.stuck_jobs}")
    print(f"total_value: {summary.total_value:g}")
    if summary_path is not None:
        print(f"summary_file: {summary_path}")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    state_path = Path(args.state_file).expanduser().resolve()
    try:
        state = _normalize_state(_load_state(state_path))
    except StateError as exc:
        print(f"taskcycle status: ERROR {exc}", file=sys.stderr)
        return 1

    repo_root = _resolve_repo_root(state_path)
    phase = _phase_state_from_snapshot(state)
    progress = _progress_from_snapshot(state)

    print("taskcycle status")
    print(f"state_file: {state_path}")
    print(f"phase: {phase.label}")
    print(f"cycle_count: {phase.cycle_count}")
    print(f"learning_mode: {phase.learning_mode}")
    print(f"learning_cycles_remaining: {phase.learning_cycles_remaining}")
    print(f"current_job: {state['current_job']}")
    print(f"rescan_active: {state['rescan_active']}")
    print(f"updated_at: {state.get('updated_at') or '<never>'}")
    for name, pending in state["queues"].items():
        print(f"queue_{name}: {len(pending)} pending, {len(state['seen'][name])} seen")

    counts = {status: 0 for status in sorted(JOB_STATUSES)}
    for record in progress.values():
        counts[record.status] = counts.get(record.status, 0) + 1
    print(f"tracked_jobs: {len(progress)}")
    for status, count in counts.items():
        if count:
            print(f"  {status}: {count}")
    print(f"total_value: {sum(record.value_generated for record in progress.values()):g}")

    lock_path = _resolve_workspace_dir(repo_root) / "lock"
    if lock_path.exists():
        lock_payload = _read_lock_payload(lock_path)
        if _lock_is_stale(lock_payload, stale_seconds=LOCK_STALE_SECONDS):
            print("lock: stale")
        else:
            print(
                f"lock: held by PID {lock_payload.get('pid', '<unknown>')} "
                f"since {lock_payload.get('started_at', '<unknown>')} "
                f"at {lock_payload.get('phase') or '<starting>'} "
                f"cycle {lock_payload.get('cycle', 0)}"
            )
    else:
        print("lock: free")

    history = state.get("history")
    if history:
        print("recent_history:")
        for entry in history[-3:]:
            print(
                f"  {entry.get('timestamp_utc', '')} "
                f"{entry.get('phase_before', '')}->{entry.get('phase_after', '')} "
                f"{entry.get('summary', '')}"
            )
    return 0


def _cmd_jobs(args: argparse.Namespace) -> int:
    state_path = Path(args.state_file).expanduser().resolve()
    repo_root = _resolve_repo_root(state_path)
    sources = _load_work_sources(repo_root)

    print("taskcycle jobs")
    print(f"job_count: {len(sources.jobs)}")
    for job in sources.jobs:
        record_path = _job_progress_record_path(repo_root, job.id)
        status = JobStatus.PENDING
        cycles = 0
        if record_path.exists():
            try:
                record = read_job_progress_record(record_path)
            except (OSError, StateError) as exc:
                print(f"taskcycle jobs: WARN {exc}", file=sys.stderr)
            else:
                status = record["status"] or JobStatus.PENDING
                cycles = record["cycles_spent"]
        print(f"{job.id:>3}  {status:<20} cycles={cycles:<3} {job.title}")
        if args.verbose:
            for line in job.description:
                print(f"       - {line}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="taskcycle command line interface")
    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init", help="Initialize the .taskcycle workspace and state file")
    init.add_argument("--state-file", default=_STATE_FILE_DEFAULT, help=_STATE_FILE_HELP)
    init.add_argument(
        "--force",
        action="store_true",
        help="Overwrite scaffold files and reset the state file.",
    )
    init.set_defaults(handler=_cmd_init)

    run = subparsers.add_parser("run", help="Run the phase scheduler for a bounded number of cycles")
    run.add_argument("--state-file", default=_STATE_FILE_DEFAULT, help=_STATE_FILE_HELP)
    run.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Cycle cap for this run (default: scheduler.max_total_cycles from policy).",
    )
    run.add_argument(
        "--pause",
        type=float,
        default=None,
        help="Seconds to pause between cycles (default: scheduler.cycle_pause_seconds).",
    )
    run.add_argument("--seed", type=int, default=None, help="Seed for the random decision source.")
    run.add_argument(
        "--resume",
        action="store_true",
        help="Continue from the saved state file instead of starting a fresh run.",
    )
    run.add_argument(
        "--no-rescan",
        action="store_true",
        help="Disable the periodic background topic re-scan.",
    )
    run.set_defaults(handler=_cmd_run)

    status = subparsers.add_parser("status", help="Show the saved run snapshot")
    status.add_argument("--state-file", default=_STATE_FILE_DEFAULT, help=_STATE_FILE_HELP)
    status.set_defaults(handler=_cmd_status)

    jobs = subparsers.add_parser("jobs", help="List registry jobs with their persisted status")
    jobs.add_argument("--state-file", default=_STATE_FILE_DEFAULT, help=_STATE_FILE_HELP)
    jobs.add_argument("--verbose", action="store_true", help="Include job description lines.")
    jobs.set_defaults(handler=_cmd_jobs)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
