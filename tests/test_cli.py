from __future__ import annotations

import json
import signal
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from ralph_loop import cli
from ralph_loop.paths import ProjectPaths
from ralph_loop.storage import FileSessionBackend, Session, SessionStore


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("RALPH_AGENT_PROFILE_PATHS", str(tmp_path / "no-global-agents"))
    cli.get_settings.cache_clear()
    yield
    cli.get_settings.cache_clear()


def init_project(root: Path, *extra: str) -> ProjectPaths:
    assert cli.main(["-C", str(root), "init", *extra]) == 0
    return ProjectPaths.for_root(root)


def record_session(paths: ProjectPaths, session_id: str, *, status: str = "running", pid: int = 999) -> Session:
    store = SessionStore(FileSessionBackend(paths.sessions_dir), is_alive=lambda _pid: True)
    session = Session(
        id=session_id,
        project_id=paths.project_id,
        status=status,
        pid=pid,
        iteration=3,
        started_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        agent="claude",
        task="001-setup",
        log_file=str(paths.session_log(session_id)),
    )
    store.save(session)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    paths.session_log(session_id).write_text(
        "".join(f"line {number}\n" for number in range(1, 11)), encoding="utf-8"
    )
    return session


def test_init_writes_layout(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    paths = init_project(tmp_path, "--agent", "amp", "--model", "smart", "--gate", "make lint", "--gate", "make test")

    config = yaml.safe_load(paths.config_file.read_text(encoding="utf-8"))
    assert config["agent"] == "amp"
    assert config["quality_gates"] == ["make lint", "make test"]
    assert "## In Progress" in paths.plan_file.read_text(encoding="utf-8")
    assert paths.specs_dir.is_dir() and paths.logs_dir.is_dir() and paths.sessions_dir.is_dir()
    assert "Initialized" in capsys.readouterr().out

    assert cli.main(["-C", str(tmp_path), "init"]) == 0
    assert "Already initialized" in capsys.readouterr().out


def test_start_without_config_is_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["-C", str(tmp_path), "start"]) == cli.EXIT_CONFIG_ERROR
    assert "Configuration error" in capsys.readouterr().err


def test_start_without_task_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    init_project(tmp_path)

    assert cli.main(["-C", str(tmp_path), "start", "build"]) == 1
    assert "No task in progress" in capsys.readouterr().err


def test_start_with_unknown_agent_is_config_error(tmp_path: Path) -> None:
    paths = init_project(tmp_path)
    paths.plan_file.write_text("## In Progress\n- specs/001-setup.md\n", encoding="utf-8")

    assert cli.main(["-C", str(tmp_path), "start", "--agent", "nope"]) == cli.EXIT_CONFIG_ERROR


def test_start_runs_agent_and_gates_end_to_end(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    script = tmp_path / "bin" / "fake-agent"
    script.parent.mkdir()
    script.write_text('#!/bin/sh\ncat > prompt.txt\necho "working"\necho "<TASK_DONE>"\n', encoding="utf-8")
    script.chmod(0o755)

    paths = init_project(tmp_path, "--gate", "test -f prompt.txt")
    (paths.ralph_dir / "agents").mkdir()
    (paths.ralph_dir / "agents" / "fake.yaml").write_text(
        yaml.safe_dump({"id": "fake", "name": "Fake Agent", "command": str(script)}),
        encoding="utf-8",
    )
    paths.plan_file.write_text("## In Progress\n- [Setup](specs/001-setup.md)\n", encoding="utf-8")
    capsys.readouterr()

    exit_code = cli.main(["-C", str(tmp_path), "start", "--agent", "fake", "--max-iterations", "3"])

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "completed after 1 iteration(s)" in out
    assert "Task: Setup" in (tmp_path / "prompt.txt").read_text(encoding="utf-8")

    assert cli.main(["-C", str(tmp_path), "status", "--json"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["status"] == "completed"
    assert status["agent"] == "fake"
    assert status["iteration"] == 1


def test_status_and_list(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    paths = init_project(tmp_path)
    capsys.readouterr()

    assert cli.main(["-C", str(tmp_path), "status"]) == 1
    assert "No sessions recorded" in capsys.readouterr().out

    record_session(paths, "s1", status="completed")

    assert cli.main(["-C", str(tmp_path), "status"]) == 0
    out = capsys.readouterr().out
    assert "Session:    s1" in out
    assert "Iteration:  3" in out

    assert cli.main(["-C", str(tmp_path), "list", "--json"]) == 0
    assert [item["id"] for item in json.loads(capsys.readouterr().out)] == ["s1"]


def test_logs_prints_tail(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    paths = init_project(tmp_path)
    record_session(paths, "s1", status="completed")
    capsys.readouterr()

    assert cli.main(["-C", str(tmp_path), "logs", "-n", "2"]) == 0
    assert capsys.readouterr().out.splitlines() == ["line 9", "line 10"]

    assert cli.main(["-C", str(tmp_path), "logs", "-s", "s1", "-f", "-n", "1"]) == 0
    assert capsys.readouterr().out.splitlines() == ["line 10"]


def test_stop_pause_resume_signal_the_controller(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    paths = init_project(tmp_path)
    sent: list[tuple[int, int]] = []

    def fake_kill(pid: int, signum: int) -> None:
        sent.append((pid, signum))

    monkeypatch.setattr(cli.os, "kill", fake_kill)

    assert cli.main(["-C", str(tmp_path), "stop"]) == 1
    assert "No active session" in capsys.readouterr().err

    record_session(paths, "live", pid=4321)

    assert cli.main(["-C", str(tmp_path), "pause"]) == 0
    assert cli.main(["-C", str(tmp_path), "resume"]) == 0
    assert cli.main(["-C", str(tmp_path), "stop", "-s", "live"]) == 0

    delivered = [entry for entry in sent if entry[1] != 0]
    assert delivered == [(4321, signal.SIGUSR1), (4321, signal.SIGUSR2), (4321, signal.SIGTERM)]


def test_agents_lists_builtins(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["-C", str(tmp_path), "agents", "--json"]) == 0

    rows = {row["id"]: row for row in json.loads(capsys.readouterr().out)}
    assert {"claude", "amp", "gemini"} <= set(rows)
    assert isinstance(rows["claude"]["installed"], bool)


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 0
    assert "usage" in capsys.readouterr().out
