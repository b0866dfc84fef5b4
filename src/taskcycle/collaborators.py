"""Collaborator interfaces and their simulated implementations.

The simulated collaborators never touch the network.  They record what they
would have done as placeholder marker files under ``.taskcycle/artifacts`` so
that a run leaves an inspectable trail.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

from taskcycle.constants import (
    CONTENT_CATEGORIES,
    DECISION_DEPLOYMENT,
    WORKSPACE_DIRNAME,
)
from taskcycle.decisions import DecisionSource
from taskcycle.models import CollaboratorError, DeploymentResult, JobDescriptor
from taskcycle.tracker import job_value
from taskcycle.utils import _ensure_text_file, _utc_now


class ContentOrganizer(Protocol):
    def organize(self, endpoint: str) -> bool: ...


class RepositoryIntegrator(Protocol):
    def integrate_repository(self, repository: str) -> bool: ...

    def search_topic(self, topic: str) -> bool: ...


class DeploymentExecutor(Protocol):
    def deploy(self, job: JobDescriptor) -> DeploymentResult: ...


def extract_domain(endpoint: str) -> str:
    hostname = urlparse(str(endpoint).strip()).hostname
    if not hostname:
        raise CollaboratorError(f"endpoint has no host: '{endpoint}'")
    return hostname


def _split_repository(repository: str) -> tuple[str, str]:
    owner, _, name = str(repository).strip().partition("/")
    if not owner or not name or "/" in name:
        raise CollaboratorError(f"repository must be 'owner/name', got '{repository}'")
    return (owner, name)


def _write_marker(path: Path, content: str) -> bool:
    created: list[Path] = []
    try:
        _ensure_text_file(path, content, created)
    except OSError as exc:
        raise CollaboratorError(f"failed to write marker {path}: {exc}") from exc
    return bool(created)


class SimulatedContentOrganizer:
    def __init__(self, repo_root: Path) -> None:
        self.artifacts_dir = repo_root / WORKSPACE_DIRNAME / "artifacts" / "content"

    def organize(self, endpoint: str) -> bool:
        domain = extract_domain(endpoint)
        for category in CONTENT_CATEGORIES:
            _write_marker(
                self.artifacts_dir / category / domain / f"{category}_summary.md",
                (
                    f"# {category} notes from {domain}\n\n"
                    f"- source: {endpoint}\n"
                    f"- recorded_at: {_utc_now()}\n"
                    "- content: placeholder, nothing was downloaded\n"
                ),
            )
        return True


class SimulatedRepositoryIntegrator:
    def __init__(self, repo_root: Path) -> None:
        self.artifacts_dir = repo_root / WORKSPACE_DIRNAME / "artifacts" / "repositories"

    def integrate_repository(self, repository: str) -> bool:
        owner, name = _split_repository(repository)
        _write_marker(
            self.artifacts_dir / "specific" / owner / name / "_integration_info.txt",
            (
                f"Repository: {owner}/{name}\n"
                f"Integrated: {_utc_now()}\n"
                "Type: specific\n"
                "Status: placeholder, nothing was cloned\n"
            ),
        )
        return True

    def search_topic(self, topic: str) -> bool:
        normalized = str(topic).strip()
        if not normalized or "/" in normalized:
            raise CollaboratorError(f"invalid topic '{topic}'")
        _write_marker(
            self.artifacts_dir / "topics" / normalized / "_search_info.txt",
            (
                f"Topic: {normalized}\n"
                f"Searched: {_utc_now()}\n"
                "Status: placeholder, no search was performed\n"
            ),
        )
        return True


class SimulatedDeploymentExecutor:
    def __init__(self, decisions: DecisionSource, *, success_probability: float = 0.7) -> None:
        self.decisions = decisions
        self.success_probability = success_probability

    def deploy(self, job: JobDescriptor) -> DeploymentResult:
        if not self.decisions.decide(DECISION_DEPLOYMENT, self.success_probability):
            return DeploymentResult(succeeded=False)
        return DeploymentResult(succeeded=True, value_generated=job_value(job.id))
