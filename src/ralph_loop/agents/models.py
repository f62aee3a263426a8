"""Agent definition models."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


class AgentDefinition(BaseModel):
    """Describes how to launch one coding agent non-interactively."""

    id: str = Field(..., description="Unique identifier used in project config (e.g. 'claude').")
    name: str = Field(..., description="Display name for the agent.")
    command: str = Field(..., description="Executable name looked up on PATH, or an absolute path.")
    args: list[str] = Field(
        default_factory=list,
        description="Arguments placing the agent in non-interactive, prompt-on-stdin mode.",
    )
    model_flag: str | None = Field(
        default="--model",
        description="Flag used to pass the model; None when the agent takes no model.",
    )
    model_choices: list[str] | None = Field(
        default=None,
        description="When set, only these model values are forwarded to the agent.",
    )
    verbose_flag: str | None = Field(default=None, description="Flag enabling verbose output.")
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the agent process.",
    )
    install_hint: str = Field(default="", description="Human instructions for installing the agent.")

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("Agent id must not be empty")
        return normalized

    @field_validator("command")
    @classmethod
    def _normalize_command(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent command must not be empty")
        return normalized

    @field_validator("args", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("Agent args must be a sequence of strings")

    def build_args(self, *, model: str | None = None, verbose: bool = False) -> list[str]:
        args = list(self.args)
        if model and self.model_flag:
            if self.model_choices is None or model in self.model_choices:
                args.extend([self.model_flag, model])
        if verbose and self.verbose_flag:
            args.append(self.verbose_flag)
        return args


@dataclass(slots=True)
class AgentInvocation:
    """A resolved, ready-to-spawn agent command."""

    agent_id: str
    executable: Path
    args: tuple[str, ...]
    env: dict[str, str] | None = None

    @property
    def command(self) -> tuple[str, ...]:
        return (str(self.executable), *self.args)


__all__ = ["AgentDefinition", "AgentInvocation"]
