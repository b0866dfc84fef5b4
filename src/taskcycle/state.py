"""Taskcycle state: progress records, run snapshots, locking, and scaffolding."""

from __future__ import annotations

import json
import os
import shutil
import socket
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from taskcycle.constants import (
    PACKAGE_SCAFFOLD_DIR,
    STATE_FILENAME,
    STATE_HISTORY_MAX_ENTRIES,
    WORKSPACE_DIRNAME,
)
from taskcycle.models import (
    JOB_STATUSES,
    PHASE_ACQUISITION,
    PHASE_JOBS,
    JobDescriptor,
    JobProgress,
    PersistenceError,
    PhaseState,
    StateError,
    _coerce_bool,
    _coerce_float,
)
from taskcycle.utils import (
    _parse_utc,
    _read_json,
    _read_key_value_text,
    _utc_now,
    _write_json,
    _write_key_value_text,
)


# ---------------------------------------------------------------------------
# Path resolution helpers
# ---------------------------------------------------------------------------


def _resolve_repo_root(state_path: Path) -> Path:
    if state_path.name == STATE_FILENAME and state_path.parent.name == WORKSPACE_DIRNAME:
        return state_path.parent.parent
    return Path.cwd()


def _resolve_workspace_dir(repo_root: Path) -> Path:
    return repo_root / WORKSPACE_DIRNAME


def _job_results_dir(repo_root: Path) -> Path:
    return _resolve_workspace_dir(repo_root) / "job_results"


def _resolve_scaffold_source() -> Path:
    if PACKAGE_SCAFFOLD_DIR.exists():
        return PACKAGE_SCAFFOLD_DIR
    raise RuntimeError("bundled taskcycle scaffold is unavailable in this installation")


def _sync_scaffold_bundle(
    source_root: Path,
    destination_root: Path,
    *,
    overwrite: bool,
) -> tuple[int, int]:
    copied = 0
    skipped = 0
    for source in source_root.rglob("*"):
        relative = source.relative_to(source_root)
        destination = destination_root / relative
        if source.is_dir():
            destination.mkdir(parents=True, exist_ok=True)
            continue
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.exists() and not overwrite:
            skipped += 1
            continue
        shutil.copy2(source, destination)
        copied += 1
    return copied, skipped


# ---------------------------------------------------------------------------
# Per-job progress records
# ---------------------------------------------------------------------------


def _job_progress_record_path(repo_root: Path, job_id: int) -> Path:
    return _job_results_dir(repo_root) / f"job{job_id}_progress.txt"


def _write_job_progress_record(
    repo_root: Path,
    descriptor: JobDescriptor | None,
    progress: JobProgress,
) -> Path:
    """Write the human-readable ``Key: value`` record for one job."""
    path = _job_progress_record_path(repo_root, progress.job_id)
    title = descriptor.title if descriptor is not None else ""
    fields: list[tuple[str, Any]] = [
        ("Job", progress.job_id),
        ("Title", title),
        ("Last Updated", _utc_now()),
        ("Total Cycles", progress.cycles_spent),
        ("Status", progress.status),
        ("Stuck Counter", progress.stuck_counter),
        ("Sandbox Success", str(progress.sandbox_success).lower()),
        ("Real World Success", str(progress.real_world_success).lower()),
        ("Value Generated", f"{progress.value_generated:g}"),
    ]
    try:
        _write_key_value_text(path, fields)
    except OSError as exc:
        raise PersistenceError(f"failed to write progress record {path}: {exc}") from exc
    return path


def read_job_progress_record(path: Path) -> dict[str, Any]:
    fields = _read_key_value_text(path)
    try:
        job_id = int(fields.get("Job", ""))
    except ValueError as exc:
        raise StateError(f"progress record has no job id: {path}") from exc
    return {
        "job_id": job_id,
        "title": fields.get("Title", ""),
        "last_updated": fields.get("Last Updated", ""),
        "cycles_spent": int(fields.get("Total Cycles", "0") or 0),
        "status": fields.get("Status", ""),
        "stuck_counter": int(fields.get("Stuck Counter", "0") or 0),
        "sandbox_success": _coerce_bool(fields.get("Sandbox Success", "false")),
        "real_world_success": _coerce_bool(fields.get("Real World Success", "false")),
        "value_generated": _coerce_float(fields.get("Value Generated", "0"), default=0.0),
    }


# ---------------------------------------------------------------------------
# Run snapshot loading / normalisation
# ---------------------------------------------------------------------------


def _default_state() -> dict[str, Any]:
    return {
        "phase": {
            "current_phase": PHASE_ACQUISITION,
            "cycle_count": 0,
            "learning_mode": False,
            "learning_cycles_remaining": 0,
        },
        "current_job": 0,
        "queues": {"endpoints": [], "repositories": [], "topics": []},
        "seen": {"endpoints": [], "repositories": [], "topics": []},
        "rescan_active": False,
        "job_progress": {},
        "updated_at": "",
        "history": [],
    }


def _load_state(path: Path) -> dict[str, Any]:
    return _read_json(path)


def _normalize_progress_payload(key: str, raw: Any) -> JobProgress:
    if not isinstance(raw, dict):
        raise StateError(f"state.job_progress.{key} must be an object")
    try:
        job_id = int(raw.get("job_id", key))
    except (TypeError, ValueError) as exc:
        raise StateError(f"state.job_progress.{key} has an invalid job id") from exc
    status = str(raw.get("status", "")).strip()
    if status not in JOB_STATUSES:
        raise StateError(
            f"state.job_progress.{key}.status must be one of {sorted(JOB_STATUSES)}, got '{status}'"
        )
    counters: dict[str, int] = {}
    for counter in ("cycles_spent", "stuck_counter"):
        try:
            value = int(raw.get(counter, 0))
        except (TypeError, ValueError) as exc:
            raise StateError(f"state.job_progress.{key}.{counter} must be an integer") from exc
        if value < 0:
            raise StateError(f"state.job_progress.{key}.{counter} must be >= 0")
        counters[counter] = value
    if counters["stuck_counter"] > counters["cycles_spent"]:
        raise StateError(f"state.job_progress.{key}.stuck_counter exceeds cycles_spent")
    real_world_success = _coerce_bool(raw.get("real_world_success"), default=False)
    if status == "operational" and not real_world_success:
        raise StateError(f"state.job_progress.{key} is operational without real-world success")
    return JobProgress(
        job_id=job_id,
        status=status,
        cycles_spent=counters["cycles_spent"],
        stuck_counter=counters["stuck_counter"],
        sandbox_success=_coerce_bool(raw.get("sandbox_success"), default=False),
        real_world_success=real_world_success,
        value_generated=max(0.0, _coerce_float(raw.get("value_generated"), default=0.0)),
        last_activity=str(raw.get("last_activity", "")).strip(),
    )


def _normalize_state(state: dict[str, Any]) -> dict[str, Any]:
    required = ("phase", "current_job", "queues", "seen", "job_progress")
    missing = [key for key in required if key not in state]
    if missing:
        raise StateError(f"state file missing required keys: {missing}")

    normalized = dict(state)
    phase_raw = normalized.get("phase")
    if not isinstance(phase_raw, dict):
        raise StateError("state.phase must be an object")
    try:
        current_phase = int(phase_raw.get("current_phase", PHASE_ACQUISITION))
        cycle_count = int(phase_raw.get("cycle_count", 0))
        learning_cycles_remaining = int(phase_raw.get("learning_cycles_remaining", 0))
    except (TypeError, ValueError) as exc:
        raise StateError("state.phase counters must be integers") from exc
    if current_phase not in range(PHASE_ACQUISITION, PHASE_JOBS + 1):
        raise StateError(f"state.phase.current_phase must be 1, 2 or 3, got {current_phase}")
    if cycle_count < 0:
        raise StateError("state.phase.cycle_count must be >= 0")
    normalized["phase"] = {
        "current_phase": current_phase,
        "cycle_count": cycle_count,
        "learning_mode": _coerce_bool(phase_raw.get("learning_mode"), default=False),
        "learning_cycles_remaining": learning_cycles_remaining,
    }

    try:
        normalized["current_job"] = max(0, int(normalized.get("current_job", 0)))
    except (TypeError, ValueError) as exc:
        raise StateError("state.current_job must be an integer") from exc

    for section in ("queues", "seen"):
        raw_section = normalized.get(section)
        if not isinstance(raw_section, dict):
            raise StateError(f"state.{section} must be an object")
        cleaned: dict[str, list[str]] = {}
        for name in ("endpoints", "repositories", "topics"):
            values = raw_section.get(name, [])
            if not isinstance(values, list):
                raise StateError(f"state.{section}.{name} must be a list")
            cleaned[name] = [str(value).strip() for value in values if str(value).strip()]
        normalized[section] = cleaned

    progress_raw = normalized.get("job_progress")
    if not isinstance(progress_raw, dict):
        raise StateError("state.job_progress must be an object")
    normalized["job_progress"] = {
        str(key): _normalize_progress_payload(str(key), value).to_payload()
        for key, value in progress_raw.items()
    }
    normalized["rescan_active"] = _coerce_bool(normalized.get("rescan_active"), default=False)

    history_raw = normalized.get("history", [])
    history: list[dict[str, Any]] = []
    if isinstance(history_raw, list):
        for entry in history_raw[-STATE_HISTORY_MAX_ENTRIES:]:
            if isinstance(entry, dict):
                history.append({str(key): value for key, value in entry.items()})
    normalized["history"] = history
    return normalized


def _phase_state_from_snapshot(state: dict[str, Any]) -> PhaseState:
    phase = state["phase"]
    return PhaseState(
        current_phase=int(phase["current_phase"]),
        cycle_count=int(phase["cycle_count"]),
        learning_mode=bool(phase["learning_mode"]),
        learning_cycles_remaining=int(phase["learning_cycles_remaining"]),
    )


def _progress_from_snapshot(state: dict[str, Any]) -> dict[int, JobProgress]:
    records: dict[int, JobProgress] = {}
    for key, payload in state["job_progress"].items():
        progress = _normalize_progress_payload(key, payload)
        records[progress.job_id] = progress
    return records


def _write_state(path: Path, state: dict[str, Any]) -> None:
    payload = dict(state)
    payload["updated_at"] = _utc_now()
    try:
        _write_json(path, payload)
    except OSError as exc:
        raise PersistenceError(f"failed to write state snapshot {path}: {exc}") from exc


def _append_state_history(
    state: dict[str, Any],
    *,
    cycle: int,
    phase_before: str,
    phase_after: str,
    summary: str,
    max_entries: int = STATE_HISTORY_MAX_ENTRIES,
) -> None:
    history_raw = state.get("history", [])
    history: list[dict[str, Any]]
    if isinstance(history_raw, list):
        history = [entry for entry in history_raw if isinstance(entry, dict)]
    else:
        history = []
    history.append(
        {
            "timestamp_utc": _utc_now(),
            "cycle": int(cycle),
            "phase_before": str(phase_before).strip(),
            "phase_after": str(phase_after).strip(),
            "summary": str(summary).strip(),
        }
    )
    if len(history) > max_entries:
        history = history[-max_entries:]
    state["history"] = history



# ---------------------------------------------------------------------------
# Run lock
# ---------------------------------------------------------------------------
#
# The lock file names the control loop that owns a workspace: which state
# file it drives, where it is in the phase cycle, and when it last checked in.


def _read_lock_payload(lock_path: Path) -> dict[str, Any]:
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _lock_age_seconds(payload: dict[str, Any], *, now: datetime | None = None) -> float | None:
    heartbeat = _parse_utc(str(payload.get("last_heartbeat_at", "")))
    if heartbeat is None:
        return None
    current = now if now is not None else datetime.now(timezone.utc)
    return (current - heartbeat).total_seconds()


def _lock_is_stale(payload: dict[str, Any], *, stale_seconds: int) -> bool:
    age = _lock_age_seconds(payload)
    return age is None or age > stale_seconds


def _describe_lock(lock_path: Path, payload: dict[str, Any]) -> str:
    return (
        f"active lock exists at {lock_path} "
        f"(pid={payload.get('pid', '<unknown>')}, "
        f"host={payload.get('host', '<unknown>')}, "
        f"phase={payload.get('phase', '<unknown>')}, "
        f"cycle={payload.get('cycle', '<unknown>')}, "
        f"state_file={payload.get('state_file', '<unknown>')})"
    )


def _acquire_lock(
    lock_path: Path,
    *,
    state_file: Path,
    command: str,
    stale_seconds: int,
) -> tuple[bool, str]:
    """Create the run lock for *state_file*, replacing a lock whose owner stopped heartbeating."""
    started_at = _utc_now()
    owner_uuid = uuid.uuid4().hex
    rendered = json.dumps(
        {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "owner_uuid": owner_uuid,
            "state_file": str(state_file),
            "command": command,
            "phase": "",
            "cycle": 0,
            "started_at": started_at,
            "last_heartbeat_at": started_at,
        },
        indent=2,
    )
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    replaced = False
    for _ in range(3):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            existing = _read_lock_payload(lock_path)
            if existing and not _lock_is_stale(existing, stale_seconds=stale_seconds):
                return (False, _describe_lock(lock_path, existing))
            try:
                os.replace(lock_path, lock_path.with_name(f"{lock_path.name}.stale.{owner_uuid[:8]}"))
            except FileNotFoundError:
                continue
            except OSError as exc:
                return (False, f"failed to replace stale lock at {lock_path}: {exc}")
            replaced = True
            continue
        except OSError as exc:
            return (False, f"failed to acquire lock at {lock_path}: {exc}")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(rendered + "\n")
        verb = "replaced stale lock" if replaced else "lock acquired"
        return (True, f"{verb} at {lock_path}")
    return (False, f"failed to acquire lock at {lock_path} after retries")


def _heartbeat_lock(lock_path: Path, *, phase: str, cycle: int) -> None:
    payload = _read_lock_payload(lock_path)
    if not payload or payload.get("pid") != os.getpid():
        return
    payload["phase"] = phase
    payload["cycle"] = int(cycle)
    payload["last_heartbeat_at"] = _utc_now()
    _write_json(lock_path, payload)


def _release_lock(lock_path: Path) -> None:
    payload = _read_lock_payload(lock_path)
    if payload and payload.get("pid") != os.getpid():
        return
    lock_path.unlink(missing_ok=True)
