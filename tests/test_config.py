from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from ralph_loop.config import (
    GateConfig,
    ProjectConfig,
    RalphSettings,
    get_settings,
    load_project_config,
    write_project_config,
)
from ralph_loop.errors import ConfigError
from ralph_loop.paths import ProjectPaths, project_id_for


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RALPH_LOG_LEVEL", "debug")
    monkeypatch.setenv("RALPH_MAX_RETRIES", "5")
    monkeypatch.setenv("RALPH_AGENT_TIMEOUT", "60")
    monkeypatch.setenv("RALPH_AGENT_PROFILE_PATHS", os.pathsep.join([str(tmp_path / "a"), str(tmp_path / "b")]))

    settings = RalphSettings()

    assert settings.log_level == "DEBUG"
    assert settings.max_retries == 5
    assert settings.agent_timeout == 60
    assert settings.agent_profile_paths == (tmp_path / "a", tmp_path / "b")


def test_settings_reject_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RALPH_LOG_LEVEL", "chatty")
    with pytest.raises(ValidationError):
        RalphSettings()

    monkeypatch.setenv("RALPH_LOG_LEVEL", "INFO")
    monkeypatch.setenv("RALPH_GATE_TIMEOUT", "0")
    with pytest.raises(ValidationError):
        RalphSettings()


def test_get_settings_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()


def test_project_config_accepts_camel_case(tmp_path: Path) -> None:
    paths = ProjectPaths.for_root(tmp_path)
    paths.ralph_dir.mkdir()
    paths.config_file.write_text(
        yaml.safe_dump(
            {
                "agent": "Claude",
                "model": "opus",
                "maxIterations": 5,
                "qualityGates": ["uv run pytest", {"name": "types", "command": "mypy ."}],
                "unknownKey": True,
            }
        ),
        encoding="utf-8",
    )

    config = load_project_config(paths)

    assert config.agent == "claude"
    assert config.max_iterations == 5
    assert config.quality_gates[0] == "uv run pytest"
    assert config.quality_gates[1] == GateConfig(name="types", command="mypy .")
    assert config.retry_budget == "shared"


def test_json_config_is_accepted(tmp_path: Path) -> None:
    paths = ProjectPaths.for_root(tmp_path)
    paths.ralph_dir.mkdir()
    (paths.ralph_dir / "config.json").write_text('{"agent": "amp", "maxRetries": 0}', encoding="utf-8")

    config = load_project_config(paths)

    assert paths.config_file.name == "config.json"
    assert config.agent == "amp"
    assert config.retry_ceiling(RalphSettings()) == 0


def test_retry_ceiling_falls_back_to_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RALPH_MAX_RETRIES", "4")

    assert ProjectConfig().retry_ceiling(RalphSettings()) == 4
    assert ProjectConfig(max_retries=1).retry_ceiling(RalphSettings()) == 1


def test_missing_or_invalid_config_is_config_error(tmp_path: Path) -> None:
    paths = ProjectPaths.for_root(tmp_path)

    with pytest.raises(ConfigError, match="not initialized"):
        load_project_config(paths)

    paths.ralph_dir.mkdir()
    paths.config_file.write_text("agent: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="parse"):
        load_project_config(paths)

    paths.config_file.write_text("maxIterations: -1\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="validation"):
        load_project_config(paths)


def test_write_project_config_roundtrip(tmp_path: Path) -> None:
    paths = ProjectPaths.for_root(tmp_path)

    target = write_project_config(paths, ProjectConfig(agent="droid", quality_gates=["make check"]))
    loaded = load_project_config(paths)

    assert target == paths.config_file
    assert loaded.agent == "droid"
    assert loaded.quality_gates == ["make check"]
    assert loaded.created_at is not None


def test_project_id_is_stable(tmp_path: Path) -> None:
    project = tmp_path / "My Project"
    project.mkdir()

    assert project_id_for(project) == project_id_for(project)
    assert project_id_for(project).startswith("my-project-")
    assert ProjectPaths.for_root(project).session_log("abc").parts[-3:] == (".ralph-wiggum", "logs", "abc.log")
