from __future__ import annotations

import json
from pathlib import Path

import pytest

import taskcycle.commands as commands_module


def _init(repo: Path) -> Path:
    state_path = repo / ".taskcycle" / "state.json"
    assert commands_module.main(["init", "--state-file", str(state_path)]) == 0
    return state_path


def test_init_creates_workspace_and_state(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_path = _init(tmp_path)
    workspace = tmp_path / ".taskcycle"

    for name in ("policy.yaml", "jobs_list.txt", "endpoints.txt", "repos.txt", "topics.txt"):
        assert (workspace / name).exists()
    state = json.loads(state_path.read_text(encoding="utf-8"))
    assert state["phase"]["current_phase"] == 1
    assert len(state["queues"]["endpoints"]) == 3
    assert "taskcycle init" in capsys.readouterr().out

    assert commands_module.main(["init", "--state-file", str(state_path)]) == 0
    assert "scaffold_skipped_files: 5" in capsys.readouterr().out


def test_run_status_and_jobs_smoke(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_path = _init(tmp_path)
    capsys.readouterr()

    assert (
        commands_module.main(
            [
                "run",
                "--state-file",
                str(state_path),
                "--max-cycles",
                "3",
                "--pause",
                "0",
                "--seed",
                "1",
                "--no-rescan",
            ]
        )
        == 0
    )
    output = capsys.readouterr().out
    assert "cycle 1: phase1 -> phase1" in output
    assert "taskcycle run: stop (cycle_cap_reached)" in output

    workspace = tmp_path / ".taskcycle"
    assert not (workspace / "lock").exists()
    assert (workspace / "logs" / "run_summary.md").read_text(encoding="utf-8").startswith(
        "# Taskcycle Run Summary"
    )
    assert (workspace / "logs" / "orchestrator.log").exists()
    state = json.loads(state_path.read_text(encoding="utf-8"))
    assert state["phase"]["cycle_count"] == 3
    assert state["phase"]["current_phase"] == 2

    assert commands_module.main(["status", "--state-file", str(state_path)]) == 0
    status_output = capsys.readouterr().out
    assert "phase: phase2" in status_output
    assert "cycle_count: 3" in status_output
    assert "lock: free" in status_output

    assert commands_module.main(["jobs", "--state-file", str(state_path), "--verbose"]) == 0
    jobs_output = capsys.readouterr().out
    assert "job_count: 21" in jobs_output
    assert "Contract audit sweep" in jobs_output


def test_resume_continues_from_snapshot(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_path = _init(tmp_path)
    base = ["--state-file", str(state_path), "--pause", "0", "--seed", "3", "--no-rescan"]

    assert commands_module.main(["run", "--max-cycles", "2", *base]) == 0
    assert commands_module.main(["run", "--max-cycles", "2", "--resume", *base]) == 0

    output = capsys.readouterr().out
    assert "resumed: True" in output
    state = json.loads(state_path.read_text(encoding="utf-8"))
    assert state["phase"]["cycle_count"] == 4
    assert [entry["cycle"] for entry in state["history"]] == [1, 2, 3, 4]
    assert len(state["seen"]["endpoints"]) == 3


def test_run_refuses_when_lock_is_held(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_path = _init(tmp_path)
    lock_path = tmp_path / ".taskcycle" / "lock"
    lock_path.write_text(
        json.dumps({"pid": 1, "host": "elsewhere", "last_heartbeat_at": "2999-01-01T00:00:00Z"}),
        encoding="utf-8",
    )

    assert commands_module.main(["run", "--state-file", str(state_path), "--pause", "0"]) == 1
    assert "active lock exists" in capsys.readouterr().err

    assert commands_module.main(["status", "--state-file", str(state_path)]) == 0
    assert "lock: held by PID 1" in capsys.readouterr().out


def test_undecodable_job_list_falls_back_to_default_jobs(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    state_path = _init(tmp_path)
    workspace = tmp_path / ".taskcycle"
    (workspace / "jobs_list.txt").write_bytes(b"JOB 1: \xff\xfe bad\n")
    (workspace / "endpoints.txt").write_bytes(b"https://\xc3\x28.example/\n")
    capsys.readouterr()
    base = ["run", "--state-file", str(state_path), "--max-cycles", "1", "--pause", "0", "--no-rescan"]

    assert commands_module.main(base) == 0
    captured = capsys.readouterr()
    assert "job list" in captured.err
    assert "not valid UTF-8" in captured.err
    assert "using defaults" in captured.err
    assert "taskcycle run: stop (cycle_cap_reached)" in captured.out
    assert not (workspace / "lock").exists()

    assert commands_module.main(["jobs", "--state-file", str(state_path)]) == 0
    assert "job_count: 21" in capsys.readouterr().out
    assert commands_module.main(base) == 0


def test_failed_startup_releases_lock(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_path = _init(tmp_path)
    workspace = tmp_path / ".taskcycle"
    (workspace / "repos.txt").unlink()
    (workspace / "repos.txt").mkdir()
    capsys.readouterr()
    base = ["run", "--state-file", str(state_path), "--max-cycles", "1", "--pause", "0", "--no-rescan"]

    assert commands_module.main(base) == 1
    assert "taskcycle run: ERROR" in capsys.readouterr().err
    assert not (workspace / "lock").exists()

    (workspace / "repos.txt").rmdir()
    assert commands_module.main(base) == 0
    assert "active lock exists" not in capsys.readouterr().err


def test_status_reports_missing_and_corrupt_state(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    state_path = tmp_path / ".taskcycle" / "state.json"
    assert commands_module.main(["status", "--state-file", str(state_path)]) == 1
    assert "state file not found" in capsys.readouterr().err

    state_path.parent.mkdir(parents=True)
    state_path.write_text("[]", encoding="utf-8")
    assert commands_module.main(["status", "--state-file", str(state_path)]) == 1
    assert "must contain an object" in capsys.readouterr().err


def test_run_rejects_invalid_arguments(tmp_path: Path) -> None:
    state_path = tmp_path / ".taskcycle" / "state.json"
    assert commands_module.main(["run", "--state-file", str(state_path), "--max-cycles", "0"]) == 2
    assert commands_module.main(["run", "--state-file", str(state_path), "--pause", "-1"]) == 2


def test_main_without_command_prints_help() -> None:
    assert commands_module.main([]) == 2
