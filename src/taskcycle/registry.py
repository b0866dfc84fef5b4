"""Taskcycle job registry -- parses job lists into typed JobDescriptor objects."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Sequence

from taskcycle.constants import DEFAULT_JOB_TABLE, JOB_BULLET, JOB_MARKER
from taskcycle.models import JobDescriptor, ParseError

_JOB_LINE_PATTERN = re.compile(r"^JOB\s+(\d+)\s*(?::\s*(.*))?$")

DEFAULT_JOBS: tuple[JobDescriptor, ...] = tuple(
    JobDescriptor(id=job_id, title=title, description=(band,))
    for job_id, title, band in DEFAULT_JOB_TABLE
)


def _parse_job_line(line: str) -> tuple[int, str] | None:
    match = _JOB_LINE_PATTERN.match(line.strip())
    if match is None:
        return None
    job_id = int(match.group(1))
    if job_id <= 0:
        return None
    return (job_id, (match.group(2) or "").strip())


def parse_job_list(
    source: str,
    *,
    fallback: Sequence[JobDescriptor] | None = DEFAULT_JOBS,
) -> list[JobDescriptor]:
    """Parse a line-oriented job list.

    A job starts at a line beginning with ``JOB <id>: <title>`` and collects
    the ``-`` bullet lines that follow it.  A job line without a usable id
    drops that entry, including its bullets.  Other lines are ignored.

    When nothing parses, the *fallback* jobs are returned; with no fallback a
    ``ParseError`` is raised.
    """
    jobs: list[JobDescriptor] = []
    current: tuple[int, str] | None = None
    description: list[str] = []

    def _flush() -> None:
        if current is not None:
            jobs.append(
                JobDescriptor(id=current[0], title=current[1], description=tuple(description))
            )

    for raw_line in str(source or "").splitlines():
        stripped = raw_line.strip()
        if not stripped:
            continue
        if stripped.startswith(JOB_MARKER):
            _flush()
            current = _parse_job_line(stripped)
            description = []
            continue
        if current is not None and stripped.startswith(JOB_BULLET):
            text = stripped[len(JOB_BULLET):].strip()
            if text:
                description.append(text)
    _flush()

    if jobs:
        return jobs
    if fallback is None:
        raise ParseError("job list is empty and no fallback job set was supplied")
    return list(fallback)


def load_job_file(
    path: Path,
    *,
    fallback: Sequence[JobDescriptor] | None = DEFAULT_JOBS,
) -> list[JobDescriptor]:
    if not path.exists():
        return parse_job_list("", fallback=fallback)
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(f"job list {path} is not valid UTF-8: {exc.reason}") from exc
    return parse_job_list(text, fallback=fallback)


def index_jobs(jobs: Iterable[JobDescriptor]) -> dict[int, JobDescriptor]:
    """Return an id -> descriptor mapping; a later duplicate id wins."""
    indexed: dict[int, JobDescriptor] = {}
    for job in jobs:
        indexed[job.id] = job
    return indexed


def max_job_id(jobs: Iterable[JobDescriptor]) -> int:
    return max((job.id for job in jobs), default=0)
