from __future__ import annotations

from pathlib import Path

import pytest

from taskcycle.collaborators import (
    SimulatedContentOrganizer,
    SimulatedDeploymentExecutor,
    SimulatedRepositoryIntegrator,
    extract_domain,
)
from taskcycle.constants import CONTENT_CATEGORIES
from taskcycle.decisions import RandomDecisionSource
from taskcycle.models import CollaboratorError, JobDescriptor


class _Always:
    def __init__(self, answer: bool) -> None:
        self.answer = answer

    def decide(self, kind: str, probability: float) -> bool:
        return self.answer


def test_extract_domain() -> None:
    assert extract_domain("https://docs.example.org/en/latest/") == "docs.example.org"
    with pytest.raises(CollaboratorError):
        extract_domain("not a url")


def test_organizer_writes_one_marker_per_category(tmp_path: Path) -> None:
    organizer = SimulatedContentOrganizer(tmp_path)
    assert organizer.organize("https://docs.example.org/guide") is True

    content_dir = tmp_path / ".taskcycle" / "artifacts" / "content"
    markers = sorted(content_dir.glob("*/docs.example.org/*_summary.md"))
    assert len(markers) == len(CONTENT_CATEGORIES)
    assert "nothing was downloaded" in markers[0].read_text(encoding="utf-8")


def test_integrator_records_repositories_and_topics(tmp_path: Path) -> None:
    integrator = SimulatedRepositoryIntegrator(tmp_path)
    assert integrator.integrate_repository("owner/project") is True
    assert integrator.search_topic("layer2") is True

    repositories_dir = tmp_path / ".taskcycle" / "artifacts" / "repositories"
    info = (repositories_dir / "specific" / "owner" / "project" / "_integration_info.txt").read_text(
        encoding="utf-8"
    )
    assert "Repository: owner/project" in info
    assert (repositories_dir / "topics" / "layer2" / "_search_info.txt").exists()


@pytest.mark.parametrize("repository", ["no-slash", "/name", "owner/", "a/b/c"])
def test_integrator_rejects_malformed_repository(tmp_path: Path, repository: str) -> None:
    with pytest.raises(CollaboratorError):
        SimulatedRepositoryIntegrator(tmp_path).integrate_repository(repository)


def test_integrator_rejects_path_like_topic(tmp_path: Path) -> None:
    with pytest.raises(CollaboratorError):
        SimulatedRepositoryIntegrator(tmp_path).search_topic("../escape")


def test_executor_reports_value_on_success() -> None:
    job = JobDescriptor(id=3, title="Market data aggregator")
    assert SimulatedDeploymentExecutor(_Always(True)).deploy(job).value_generated == 5.0
    failed = SimulatedDeploymentExecutor(_Always(False)).deploy(job)
    assert failed.succeeded is False
    assert failed.value_generated == 0.0


def test_random_decisions_are_reproducible_and_clamped() -> None:
    first = RandomDecisionSource(seed=5)
    second = RandomDecisionSource(seed=5)
    rolls = [first.decide("progress", 0.5) for _ in range(20)]
    assert rolls == [second.decide("progress", 0.5) for _ in range(20)]
    assert first.decide("progress", 0.0) is False
    assert first.decide("progress", 1.0) is True
