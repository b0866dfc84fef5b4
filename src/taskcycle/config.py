from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from taskcycle.constants import (
    DEFAULT_ENDPOINTS,
    DEFAULT_REPOSITORIES,
    DEFAULT_TOPICS,
    ENDPOINTS_FILENAME,
    JOBS_FILENAME,
    POLICY_FILENAME,
    REPOSITORIES_FILENAME,
    TOPICS_FILENAME,
    WORKSPACE_DIRNAME,
)
from taskcycle.models import (
    ParseError,
    SchedulerConfig,
    WorkSources,
    _coerce_bool,
    _coerce_float,
    _coerce_positive_int,
    _coerce_probability,
)
from taskcycle.registry import DEFAULT_JOBS, load_job_file
from taskcycle.utils import _log_warning, _read_line_list


def _load_policy(repo_root: Path) -> dict[str, Any]:
    policy_path = repo_root / WORKSPACE_DIRNAME / POLICY_FILENAME
    if not policy_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _policy_section(policy: dict[str, Any], name: str) -> dict[str, Any]:
    section = policy.get(name)
    if not isinstance(section, dict):
        return {}
    return section


def _parse_continuous_jobs(raw: Any, *, default: frozenset[int]) -> frozenset[int]:
    if raw is None:
        return default
    if not isinstance(raw, list):
        return default
    job_ids: set[int] = set()
    for entry in raw:
        try:
            job_id = int(entry)
        except (TypeError, ValueError):
            continue
        if job_id > 0:
            job_ids.add(job_id)
    return frozenset(job_ids)


def _load_scheduler_config(repo_root: Path) -> SchedulerConfig:
    defaults = SchedulerConfig()
    policy = _load_policy(repo_root)
    scheduler = _policy_section(policy, "scheduler")
    probabilities = _policy_section(policy, "probabilities")
    rescan = _policy_section(policy, "rescan")

    cycle_pause = _coerce_float(
        scheduler.get("cycle_pause_seconds", defaults.cycle_pause_seconds),
        default=defaults.cycle_pause_seconds,
    )
    if cycle_pause < 0:
        cycle_pause = 0.0
    rescan_interval = _coerce_float(
        rescan.get("interval_seconds", defaults.rescan_interval_seconds),
        default=defaults.rescan_interval_seconds,
    )
    if rescan_interval <= 0:
        rescan_interval = defaults.rescan_interval_seconds

    raw_seed = policy.get("seed")
    seed: int | None
    try:
        seed = int(raw_seed) if raw_seed is not None else None
    except (TypeError, ValueError):
        seed = None

    return SchedulerConfig(
        max_cycles_per_job=_coerce_positive_int(
            scheduler.get("max_cycles_per_job"), default=defaults.max_cycles_per_job
        ),
        max_stuck_cycles=_coerce_positive_int(
            scheduler.get("max_stuck_cycles"), default=defaults.max_stuck_cycles
        ),
        learning_cycles=_coerce_positive_int(
            scheduler.get("learning_cycles"), default=defaults.learning_cycles
        ),
        stuck_jobs_threshold=_coerce_positive_int(
            scheduler.get("stuck_jobs_threshold"), default=defaults.stuck_jobs_threshold
        ),
        continuous_jobs=_parse_continuous_jobs(
            scheduler.get("continuous_jobs"), default=defaults.continuous_jobs
        ),
        max_total_cycles=_coerce_positive_int(
            scheduler.get("max_total_cycles"), default=defaults.max_total_cycles
        ),
        cycle_pause_seconds=cycle_pause,
        random_reversion_learning_cycles=_coerce_positive_int(
            scheduler.get("random_reversion_learning_cycles"),
            default=defaults.random_reversion_learning_cycles,
        ),
        progress_probability=_coerce_probability(
            probabilities.get("progress", defaults.progress_probability),
            default=defaults.progress_probability,
        ),
        sandbox_success_probability=_coerce_probability(
            probabilities.get("sandbox_success", defaults.sandbox_success_probability),
            default=defaults.sandbox_success_probability,
        ),
        deployment_success_probability=_coerce_probability(
            probabilities.get("deployment_success", defaults.deployment_success_probability),
            default=defaults.deployment_success_probability,
        ),
        learning_reversion_probability=_coerce_probability(
            probabilities.get("learning_reversion", defaults.learning_reversion_probability),
            default=defaults.learning_reversion_probability,
        ),
        rescan_enabled=_coerce_bool(
            rescan.get("enabled", defaults.rescan_enabled), default=defaults.rescan_enabled
        ),
        rescan_interval_seconds=rescan_interval,
        seed=seed,
    )


def _read_work_list(repo_root: Path, path: Path) -> list[str] | None:
    try:
        return _read_line_list(path)
    except ParseError as exc:
        _log_warning(repo_root, f"{exc}; using defaults")
        return None


def _load_work_sources(repo_root: Path) -> WorkSources:
    """Read the phase work lists.

    A missing or undecodable file falls back to the defaults; the latter is
    reported as a warning.
    """
    workspace_dir = repo_root / WORKSPACE_DIRNAME
    endpoints = _read_work_list(repo_root, workspace_dir / ENDPOINTS_FILENAME)
    repositories = _read_work_list(repo_root, workspace_dir / REPOSITORIES_FILENAME)
    topics = _read_work_list(repo_root, workspace_dir / TOPICS_FILENAME)
    try:
        jobs = load_job_file(workspace_dir / JOBS_FILENAME)
    except ParseError as exc:
        _log_warning(repo_root, f"{exc}; using defaults")
        jobs = list(DEFAULT_JOBS)
    return WorkSources(
        endpoints=tuple(DEFAULT_ENDPOINTS if endpoints is None else endpoints),
        repositories=tuple(DEFAULT_REPOSITORIES if repositories is None else repositories),
        topics=tuple(DEFAULT_TOPICS if topics is None else topics),
        jobs=tuple(jobs),
    )
