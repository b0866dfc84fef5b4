"""Taskcycle utility functions: timestamps, file I/O, and the orchestrator log."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from taskcycle.constants import WORKSPACE_DIRNAME
from taskcycle.models import ParseError, StateError


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# JSON I/O helpers
# ---------------------------------------------------------------------------


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise StateError(f"state file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateError(f"state file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"state file must contain an object: {path}")
    return payload


# ---------------------------------------------------------------------------
# Text / file helpers
# ---------------------------------------------------------------------------


def _read_line_list(path: Path) -> list[str] | None:
    """Return non-comment lines of *path*, or None when the file is missing."""
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(f"{path} is not valid UTF-8: {exc.reason}") from exc
    entries: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        entries.append(stripped)
    return entries


def _ensure_text_file(path: Path, content: str, created: list[Path]) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    created.append(path)


def _write_key_value_text(path: Path, fields: list[tuple[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"{key}: {value}" for key, value in fields]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _read_key_value_text(path: Path) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if key:
            fields[key] = value.strip()
    return fields


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(repo_root: Path, message: str) -> None:
    log_path = repo_root / WORKSPACE_DIRNAME / "logs" / "orchestrator.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


def _log_warning(repo_root: Path | None, message: str) -> None:
    """Report a recoverable failure on stderr and, when possible, in the log."""
    print(f"taskcycle: WARN {message}", file=sys.stderr)
    if repo_root is None:
        return
    try:
        _append_log(repo_root, f"WARN {message}")
    except OSError:
        pass
