"""Work selection for the three phases."""

from __future__ import annotations

from collections import deque
from typing import Iterable, Mapping, Sequence

from taskcycle.constants import PRIORITY_ORDER
from taskcycle.models import (
    PHASE_ACQUISITION,
    PHASE_INTEGRATION,
    PHASE_JOBS,
    TERMINAL_JOB_STATUSES,
    JobDescriptor,
    JobProgress,
    JobStatus,
    PhaseState,
    WorkItem,
)
from taskcycle.registry import index_jobs, max_job_id


class _DedupQueue:
    """FIFO queue that hands out each value at most once."""

    def __init__(self, values: Iterable[str] = (), seen: Iterable[str] = ()) -> None:
        self._pending: deque[str] = deque()
        self.seen: set[str] = set(seen)
        self.extend(values)

    def __len__(self) -> int:
        return len(self._pending)

    def extend(self, values: Iterable[str]) -> int:
        added = 0
        for value in values:
            if value in self.seen or value in self._pending:
                continue
            self._pending.append(value)
            added += 1
        return added

    def pop(self) -> str | None:
        while self._pending:
            value = self._pending.popleft()
            if value in self.seen:
                continue
            self.seen.add(value)
            return value
        return None

    def snapshot(self) -> tuple[list[str], list[str]]:
        return (list(self._pending), sorted(self.seen))


class TaskRotator:
    def __init__(
        self,
        endpoints: Iterable[str],
        repositories: Iterable[str],
        topics: Iterable[str],
        jobs: Iterable[JobDescriptor],
        *,
        priority_order: Sequence[int] = PRIORITY_ORDER,
        current_job: int = 0,
        seen: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        seen = seen or {}
        self.endpoints = _DedupQueue(endpoints, seen.get("endpoints", ()))
        self.repositories = _DedupQueue(repositories, seen.get("repositories", ()))
        self.topics = _DedupQueue(topics, seen.get("topics", ()))
        self.jobs = index_jobs(jobs)
        self.max_job_id = max_job_id(self.jobs.values())
        self.priority_order = tuple(priority_order)
        self.current_job = current_job

    # -- phase 1 -----------------------------------------------------------

    def next_endpoint(self) -> WorkItem | None:
        endpoint = self.endpoints.pop()
        if endpoint is None:
            return None
        return WorkItem(kind="endpoint", value=endpoint)

    # -- phase 2 -----------------------------------------------------------

    def next_integration(self) -> WorkItem | None:
        repository = self.repositories.pop()
        if repository is not None:
            return WorkItem(kind="repository", value=repository)
        return self.next_topic()

    def next_topic(self) -> WorkItem | None:
        topic = self.topics.pop()
        if topic is None:
            return None
        return WorkItem(kind="topic", value=topic)

    def integration_exhausted(self) -> bool:
        return len(self.repositories) == 0 and len(self.topics) == 0

    def enqueue_topics(self, topics: Iterable[str]) -> int:
        return self.topics.extend(topics)

    # -- phase 3 -----------------------------------------------------------

    def next_job(self, progress: Mapping[int, JobProgress]) -> WorkItem | None:
        """Pick the next job and make it current.

        Jobs are started in priority order; once every job has been started
        the rotation moves to the successor of the current job, skipping
        terminal jobs.  Returns None when every job is terminal.
        """
        for job_id in self.priority_order:
            if job_id not in self.jobs:
                continue
            record = progress.get(job_id)
            if record is None or record.status == JobStatus.PENDING:
                self.current_job = job_id
                return WorkItem(kind="job", value=job_id)

        if self.max_job_id <= 0:
            return None
        candidate = self.current_job
        for _ in range(self.max_job_id):
            candidate = (candidate % self.max_job_id) + 1
            if candidate not in self.jobs:
                continue
            record = progress.get(candidate)
            if record is not None and record.status in TERMINAL_JOB_STATUSES:
                continue
            self.current_job = candidate
            return WorkItem(kind="job", value=candidate)
        return None

    # -- dispatch ----------------------------------------------------------

    def next(self, phase: PhaseState, progress: Mapping[int, JobProgress]) -> WorkItem | None:
        if phase.current_phase == PHASE_ACQUISITION:
            return self.next_endpoint()
        if phase.current_phase == PHASE_INTEGRATION:
            if phase.learning_mode:
                return self.next_topic()
            return self.next_integration()
        if phase.current_phase == PHASE_JOBS:
            return self.next_job(progress)
        return None

    def snapshot(self) -> dict[str, dict[str, list[str]]]:
        queues: dict[str, list[str]] = {}
        seen: dict[str, list[str]] = {}
        for name, queue in (
            ("endpoints", self.endpoints),
            ("repositories", self.repositories),
            ("topics", self.topics),
        ):
            queues[name], seen[name] = queue.snapshot()
        return {"queues": queues, "seen": seen}
