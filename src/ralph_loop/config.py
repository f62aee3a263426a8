"""Configuration management for the build loop."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import ConfigError
from .paths import ProjectPaths

_DEFAULT_PROFILE_PATHS = (Path(".ralph-wiggum/agents"),)


class RalphSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = Field(default="INFO", validation_alias="RALPH_LOG_LEVEL")
    agent_timeout: float = Field(default=1800.0, validation_alias="RALPH_AGENT_TIMEOUT")
    gate_timeout: float = Field(default=120.0, validation_alias="RALPH_GATE_TIMEOUT")
    kill_grace: float = Field(default=5.0, validation_alias="RALPH_KILL_GRACE")
    max_retries: int = Field(default=3, validation_alias="RALPH_MAX_RETRIES")
    agent_profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=_DEFAULT_PROFILE_PATHS, validation_alias="RALPH_AGENT_PROFILE_PATHS"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "RALPH_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent_timeout", "gate_timeout", "kill_grace")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be > 0 seconds")
        return value

    @field_validator("max_retries")
    @classmethod
    def _validate_max_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("RALPH_MAX_RETRIES must be >= 0")
        return value

    @field_validator("agent_profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return _DEFAULT_PROFILE_PATHS
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or _DEFAULT_PROFILE_PATHS
        raise TypeError(
            "RALPH_AGENT_PROFILE_PATHS must be a list of paths or a path-separated string"
        )


@lru_cache(maxsize=1)
def get_settings() -> RalphSettings:
    """Return cached settings instance."""

    settings = RalphSettings()
    settings.agent_profile_paths = tuple(
        path.expanduser().resolve() for path in settings.agent_profile_paths
    )
    return settings


class GateConfig(BaseModel):
    """A quality gate given as an explicit name/command pair."""

    name: str | None = None
    command: str

    @field_validator("command")
    @classmethod
    def _normalize_command(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Quality gate command must not be empty")
        return normalized


class ProjectConfig(BaseModel):
    """Per-project settings read once at session start.

    Keys may be written in snake_case or camelCase (``maxIterations``).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    project_name: str | None = None
    agent: str = "claude"
    model: str | None = None
    max_iterations: int = Field(default=0, ge=0, description="0 means no iteration cap.")
    max_retries: int | None = Field(
        default=None,
        ge=0,
        description="Retries allowed after a failed attempt; falls back to RALPH_MAX_RETRIES.",
    )
    retry_budget: Literal["shared", "independent"] = Field(
        default="shared",
        description=(
            "'shared' counts agent and gate failures against one budget; "
            "'independent' gives each kind its own max_retries budget."
        ),
    )
    quality_gates: list[str | GateConfig] = Field(default_factory=list)
    agent_timeout: float | None = Field(default=None, gt=0)
    gate_timeout: float | None = Field(default=None, gt=0)
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("agent")
    @classmethod
    def _normalize_agent(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("agent must not be empty")
        return normalized

    @field_validator("quality_gates", mode="before")
    @classmethod
    def _ensure_gate_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return [item.strip() if isinstance(item, str) else item for item in value if item != ""]
        raise TypeError("quality_gates must be a list of commands")

    def retry_ceiling(self, settings: RalphSettings) -> int:
        return self.max_retries if self.max_retries is not None else settings.max_retries


def load_project_config(paths: ProjectPaths) -> ProjectConfig:
    """Read and validate the project config file."""

    config_file = paths.config_file
    if not config_file.exists():
        raise ConfigError(
            f"Project is not initialized: {config_file} not found (run 'ralph-loop init')"
        )

    try:
        document = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config in {config_file}: {exc}") from exc

    try:
        return ProjectConfig.model_validate(document or {})
    except ValidationError as exc:
        raise ConfigError(f"Config validation error in {config_file}: {exc}") from exc


def write_project_config(paths: ProjectPaths, config: ProjectConfig) -> Path:
    """Persist ``config`` as YAML, stamping its timestamps."""

    now = datetime.now(timezone.utc).isoformat()
    config.created_at = config.created_at or now
    config.updated_at = now
    payload = config.model_dump(mode="json", exclude_none=True)
    target = paths.config_file
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return target


__all__ = [
    "GateConfig",
    "ProjectConfig",
    "RalphSettings",
    "get_settings",
    "load_project_config",
    "write_project_config",
]
