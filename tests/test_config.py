from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from taskcycle.config import _load_scheduler_config, _load_work_sources
from taskcycle.constants import (
    DEFAULT_ENDPOINTS,
    DEFAULT_REPOSITORIES,
    DEFAULT_TOPICS,
    PACKAGE_SCAFFOLD_DIR,
)
from taskcycle.models import SchedulerConfig
from taskcycle.registry import DEFAULT_JOBS


def _write_policy(repo: Path, policy: object) -> None:
    policy_path = repo / ".taskcycle" / "policy.yaml"
    policy_path.parent.mkdir(parents=True, exist_ok=True)
    policy_path.write_text(yaml.safe_dump(policy, sort_keys=False), encoding="utf-8")


def test_missing_policy_uses_defaults(tmp_path: Path) -> None:
    assert _load_scheduler_config(tmp_path) == SchedulerConfig()


def test_packaged_policy_matches_dataclass_defaults() -> None:
    repo_root = PACKAGE_SCAFFOLD_DIR.parent
    assert _load_scheduler_config(repo_root) == SchedulerConfig()


def test_policy_overrides_are_applied(tmp_path: Path) -> None:
    _write_policy(
        tmp_path,
        {
            "scheduler": {
                "max_cycles_per_job": 8,
                "learning_cycles": 4,
                "continuous_jobs": [2, "3", "bad", -1],
                "max_total_cycles": 50,
                "cycle_pause_seconds": 0,
            },
            "probabilities": {"progress": 0.9, "learning_reversion": 0.0},
            "rescan": {"enabled": False, "interval_seconds": 60},
            "seed": 42,
        },
    )

    config = _load_scheduler_config(tmp_path)

    assert config.max_cycles_per_job == 8
    assert config.learning_cycles == 4
    assert config.continuous_jobs == frozenset({2, 3})
    assert config.max_total_cycles == 50
    assert config.cycle_pause_seconds == 0.0
    assert config.progress_probability == 0.9
    assert config.learning_reversion_probability == 0.0
    assert config.rescan_enabled is False
    assert config.rescan_interval_seconds == 60.0
    assert config.seed == 42
    assert config.max_stuck_cycles == SchedulerConfig().max_stuck_cycles


def test_invalid_values_are_clamped_or_defaulted(tmp_path: Path) -> None:
    _write_policy(
        tmp_path,
        {
            "scheduler": {
                "max_stuck_cycles": 0,
                "stuck_jobs_threshold": "many",
                "cycle_pause_seconds": -5,
                "continuous_jobs": "13",
            },
            "probabilities": {"progress": 1.7, "sandbox_success": -0.2},
            "rescan": {"interval_seconds": 0},
            "seed": "not-a-seed",
        },
    )

    config = _load_scheduler_config(tmp_path)
    defaults = SchedulerConfig()

    assert config.max_stuck_cycles == defaults.max_stuck_cycles
    assert config.stuck_jobs_threshold == defaults.stuck_jobs_threshold
    assert config.cycle_pause_seconds == 0.0
    assert config.continuous_jobs == defaults.continuous_jobs
    assert config.progress_probability == 1.0
    assert config.sandbox_success_probability == 0.0
    assert config.rescan_interval_seconds == defaults.rescan_interval_seconds
    assert config.seed is None


def test_unparseable_policy_falls_back_to_defaults(tmp_path: Path) -> None:
    policy_path = tmp_path / ".taskcycle" / "policy.yaml"
    policy_path.parent.mkdir(parents=True)
    policy_path.write_text("scheduler: [unclosed\n", encoding="utf-8")
    assert _load_scheduler_config(tmp_path) == SchedulerConfig()


def test_work_sources_default_when_files_missing(tmp_path: Path) -> None:
    sources = _load_work_sources(tmp_path)
    assert sources.endpoints == DEFAULT_ENDPOINTS
    assert sources.repositories == DEFAULT_REPOSITORIES
    assert sources.topics == DEFAULT_TOPICS
    assert sources.jobs == DEFAULT_JOBS


def test_work_sources_read_workspace_files(tmp_path: Path) -> None:
    workspace = tmp_path / ".taskcycle"
    workspace.mkdir()
    (workspace / "endpoints.txt").write_text(
        "# comment\nhttps://one.example/\n\nhttps://two.example/\n", encoding="utf-8"
    )
    (workspace / "repos.txt").write_text("", encoding="utf-8")
    (workspace / "topics.txt").write_text("alpha\n", encoding="utf-8")
    (workspace / "jobs_list.txt").write_text("JOB 3: Only job\n- detail\n", encoding="utf-8")

    sources = _load_work_sources(tmp_path)

    assert sources.endpoints == ("https://one.example/", "https://two.example/")
    assert sources.repositories == ()
    assert sources.topics == ("alpha",)
    assert [(job.id, job.title) for job in sources.jobs] == [(3, "Only job")]


def test_undecodable_work_files_fall_back_with_warning(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    workspace = tmp_path / ".taskcycle"
    workspace.mkdir()
    (workspace / "topics.txt").write_bytes(b"\xff\xfealpha\n")
    (workspace / "repos.txt").write_text("owner/kept\n", encoding="utf-8")
    (workspace / "jobs_list.txt").write_bytes(b"JOB 2: \x80 title\n")

    sources = _load_work_sources(tmp_path)

    assert sources.topics == DEFAULT_TOPICS
    assert sources.repositories == ("owner/kept",)
    assert sources.jobs == DEFAULT_JOBS
    err = capsys.readouterr().err
    assert err.count("taskcycle: WARN") == 2
    assert "topics.txt is not valid UTF-8" in err
    log_text = (workspace / "logs" / "orchestrator.log").read_text(encoding="utf-8")
    assert "using defaults" in log_text
