from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

from ralph_loop.cancellation import CancellationToken
from ralph_loop.process import (
    FakeProcessRunner,
    ProcessCancelled,
    ProcessResult,
    ProcessRunner,
    sanitize_environment,
    truncate_middle,
)


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def test_runner_feeds_stdin_and_interleaves_output(tmp_path: Path) -> None:
    script = write_script(tmp_path / "agent", 'read line\necho "got $line"\necho "warn" >&2\nexit 0\n')
    chunks: list[str] = []

    runner = ProcessRunner()
    result = asyncio.run(runner.run([str(script)], input="hello\n", on_output=chunks.append))

    assert result.ok
    assert result.stdout == "got hello\n"
    assert result.stderr == "warn\n"
    assert "got hello" in result.output and "warn" in result.output
    assert "".join(chunks) == result.output


def test_shell_command_reports_exit_code(tmp_path: Path) -> None:
    runner = ProcessRunner()
    result = asyncio.run(runner.run("echo checking; exit 3", cwd=tmp_path))

    assert result.returncode == 3
    assert not result.ok
    assert result.stdout == "checking\n"


def test_timeout_terminates_child(tmp_path: Path) -> None:
    runner = ProcessRunner(kill_grace=1.0)
    started = time.monotonic()
    result = asyncio.run(runner.run("echo started; sleep 30", cwd=tmp_path, timeout=0.5))

    assert result.timed_out
    assert not result.ok
    assert "started" in result.output
    assert time.monotonic() - started < 10


def test_stop_request_cancels_child(tmp_path: Path) -> None:
    runner = ProcessRunner(kill_grace=1.0)
    token = CancellationToken()

    async def scenario() -> ProcessResult:
        loop = asyncio.get_running_loop()
        loop.call_later(0.3, token.stop)
        return await runner.run("sleep 30", cwd=tmp_path, timeout=20, cancel=token)

    started = time.monotonic()
    with pytest.raises(ProcessCancelled) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.result.returncode != 0
    assert time.monotonic() - started < 10


def test_missing_executable_raises_oserror(tmp_path: Path) -> None:
    runner = ProcessRunner()

    with pytest.raises(OSError):
        asyncio.run(runner.run([str(tmp_path / "missing-agent")]))


def test_fake_runner_replays_and_records() -> None:
    fake = FakeProcessRunner(
        [
            ProcessResult(args=("gate",), returncode=1, stdout="out\n", stderr="err\n"),
            RuntimeError("boom"),
        ]
    )
    seen: list[str] = []

    result = asyncio.run(fake.run("make lint", input="prompt", timeout=5, on_output=seen.append))

    assert result.returncode == 1
    assert result.output == "out\nerr\n"
    assert seen == ["out\nerr\n"]
    assert fake.invocations[0].command == "make lint"
    assert fake.invocations[0].input == "prompt"
    assert fake.remaining == 1

    with pytest.raises(RuntimeError):
        asyncio.run(fake.run("make test"))

    default = asyncio.run(fake.run(["true"]))
    assert default.ok


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.setenv("VIRTUAL_ENV", sys.prefix)

    env = sanitize_environment({"AGENT_TOKEN": "abc"})

    assert "PYTHONPATH" not in env
    assert "VIRTUAL_ENV" not in env
    assert env["AGENT_TOKEN"] == "abc"


def test_truncate_middle_keeps_both_ends() -> None:
    text = "HEAD" + "x" * 10_000 + "TAIL"

    shortened = truncate_middle(text, 200)

    assert shortened.startswith("HEAD")
    assert shortened.endswith("TAIL")
    assert "truncated" in shortened
    assert len(shortened) < 300
    assert truncate_middle("short", 200) == "short"
