"""Tests for taskcycle.rotator: per-phase work selection."""

from __future__ import annotations

from taskcycle.constants import PRIORITY_ORDER
from taskcycle.models import (
    PHASE_ACQUISITION,
    PHASE_INTEGRATION,
    PHASE_JOBS,
    JobDescriptor,
    JobProgress,
    JobStatus,
    PhaseState,
    WorkItem,
)
from taskcycle.registry import DEFAULT_JOBS
from taskcycle.rotator import TaskRotator


def _rotator(**kwargs) -> TaskRotator:
    params = {
        "endpoints": ["https://a.example/docs", "https://b.example/"],
        "repositories": ["owner/one", "owner/two"],
        "topics": ["alpha", "beta"],
        "jobs": DEFAULT_JOBS,
    }
    params.update(kwargs)
    return TaskRotator(**params)


def _progress(**statuses: str) -> dict[int, JobProgress]:
    records: dict[int, JobProgress] = {}
    for key, status in statuses.items():
        job_id = int(key.lstrip("j"))
        records[job_id] = JobProgress(job_id=job_id, status=status)
    return records


class TestQueues:
    def test_endpoints_are_fifo_and_handed_out_once(self) -> None:
        rotator = _rotator()
        assert rotator.next_endpoint() == WorkItem(kind="endpoint", value="https://a.example/docs")
        assert rotator.next_endpoint() == WorkItem(kind="endpoint", value="https://b.example/")
        assert rotator.next_endpoint() is None

    def test_duplicates_are_dropped(self) -> None:
        rotator = _rotator(endpoints=["https://a.example/", "https://a.example/"])
        assert len(rotator.endpoints) == 1

    def test_repositories_come_before_topics(self) -> None:
        rotator = _rotator()
        kinds = []
        while True:
            item = rotator.next_integration()
            if item is None:
                break
            kinds.append((item.kind, item.value))
        assert kinds == [
            ("repository", "owner/one"),
            ("repository", "owner/two"),
            ("topic", "alpha"),
            ("topic", "beta"),
        ]
        assert rotator.integration_exhausted()

    def test_enqueue_skips_already_processed_topics(self) -> None:
        rotator = _rotator(repositories=[])
        assert rotator.next_topic().value == "alpha"
        added = rotator.enqueue_topics(["alpha", "beta", "gamma", "gamma"])
        assert added == 1
        assert [rotator.next_topic().value, rotator.next_topic().value] == ["beta", "gamma"]
        assert rotator.next_topic() is None

    def test_seen_values_survive_a_snapshot(self) -> None:
        rotator = _rotator()
        rotator.next_endpoint()
        rotator.next_integration()
        snapshot = rotator.snapshot()
        assert snapshot["queues"]["endpoints"] == ["https://b.example/"]
        assert snapshot["seen"]["endpoints"] == ["https://a.example/docs"]
        assert snapshot["seen"]["repositories"] == ["owner/one"]

        restored = TaskRotator(
            ["https://a.example/docs"] + snapshot["queues"]["endpoints"],
            snapshot["queues"]["repositories"],
            snapshot["queues"]["topics"],
            DEFAULT_JOBS,
            seen=snapshot["seen"],
        )
        assert restored.next_endpoint().value == "https://b.example/"
        assert restored.next_endpoint() is None


class TestNextJob:
    def test_unstarted_jobs_follow_priority_order(self) -> None:
        rotator = _rotator()
        progress: dict[int, JobProgress] = {}
        picked = []
        for _ in range(len(PRIORITY_ORDER)):
            item = rotator.next_job(progress)
            picked.append(item.value)
            progress[item.value] = JobProgress(job_id=item.value, status=JobStatus.EXPERIMENTING)
        assert picked == [1, 2, 3, 4, 5, 13, 14, 15, 16, 17, 6, 7, 8, 9, 10, 11, 12, 18, 19, 20, 21]

    def test_rotation_wraps_from_last_job_to_first(self) -> None:
        progress = {
            job.id: JobProgress(job_id=job.id, status=JobStatus.EXPERIMENTING)
            for job in DEFAULT_JOBS
        }
        rotator = _rotator(current_job=21)
        assert rotator.next_job(progress) == WorkItem(kind="job", value=1)
        assert rotator.current_job == 1
        assert rotator.next_job(progress).value == 2

    def test_rotation_skips_terminal_jobs(self) -> None:
        progress = {
            job.id: JobProgress(job_id=job.id, status=JobStatus.OPERATIONAL)
            for job in DEFAULT_JOBS
        }
        progress[4] = JobProgress(job_id=4, status=JobStatus.STUCK)
        progress[9] = JobProgress(job_id=9, status=JobStatus.NEEDS_IMPROVEMENT)
        progress[13] = JobProgress(job_id=13, status=JobStatus.RUNNING_CONTINUOUS)
        rotator = _rotator(current_job=4)
        assert rotator.next_job(progress).value == 9
        assert rotator.next_job(progress).value == 4

    def test_all_terminal_returns_none(self) -> None:
        progress = {
            job.id: JobProgress(
                job_id=job.id,
                status=JobStatus.RUNNING_CONTINUOUS if job.id in (13, 21) else JobStatus.OPERATIONAL,
            )
            for job in DEFAULT_JOBS
        }
        rotator = _rotator(current_job=7)
        assert rotator.next_job(progress) is None
        assert rotator.current_job == 7

    def test_missing_ids_are_skipped(self) -> None:
        jobs = [JobDescriptor(id=2, title="two"), JobDescriptor(id=5, title="five")]
        rotator = _rotator(jobs=jobs, current_job=5)
        progress = _progress(j2=JobStatus.EXPERIMENTING, j5=JobStatus.EXPERIMENTING)
        assert rotator.next_job(progress).value == 2
        assert rotator.next_job(progress).value == 5


def test_dispatch_by_phase() -> None:
    rotator = _rotator()
    assert rotator.next(PhaseState(current_phase=PHASE_ACQUISITION), {}).kind == "endpoint"
    assert rotator.next(PhaseState(current_phase=PHASE_INTEGRATION), {}).kind == "repository"
    learning = PhaseState(current_phase=PHASE_INTEGRATION, learning_mode=True)
    assert rotator.next(learning, {}).kind == "topic"
    assert rotator.next(PhaseState(current_phase=PHASE_JOBS), {}) == WorkItem(kind="job", value=1)
