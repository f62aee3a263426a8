"""Agent registry: built-in definitions, YAML overrides and executable discovery."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Callable, Iterable

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from ..process.utils import sanitize_environment
from .models import AgentDefinition, AgentInvocation

BUILTIN_AGENTS: tuple[dict[str, Any], ...] = (
    {
        "id": "claude",
        "name": "Claude Code",
        "command": "claude",
        "args": ["-p", "--dangerously-skip-permissions", "--output-format=stream-json"],
        "verbose_flag": "--verbose",
        "install_hint": "npm install -g @anthropic-ai/claude-code && claude login",
    },
    {
        "id": "amp",
        "name": "Amp Code",
        "command": "amp",
        "args": ["--execute", "--stream-json"],
        # amp selects a mode rather than a model
        "model_flag": "--mode",
        "model_choices": ["rush", "smart"],
        "install_hint": "curl -fsSL https://ampcode.com/install.sh | bash",
    },
    {
        "id": "droid",
        "name": "Factory Droid",
        "command": "droid",
        "args": ["exec", "--skip-permissions-unsafe", "-o", "stream-json"],
        "model_flag": "-m",
        "install_hint": "curl -fsSL https://app.factory.ai/cli | sh",
    },
    {
        "id": "opencode",
        "name": "OpenCode",
        "command": "opencode",
        "args": ["run", "--format", "json"],
        "install_hint": "npm install -g opencode",
    },
    {
        "id": "cursor",
        "name": "Cursor Agent",
        "command": "agent",
        "args": ["-p", "--output-format", "json"],
        "install_hint": "curl https://cursor.com/install -fsS | bash",
    },
    {
        "id": "codex",
        "name": "OpenAI Codex",
        "command": "codex",
        "args": ["exec", "--json", "--dangerously-bypass-approvals-and-sandbox"],
        "install_hint": "npm install -g @openai/codex && codex login",
    },
    {
        "id": "gemini",
        "name": "Gemini CLI",
        "command": "gemini",
        "args": ["--output-format", "stream-json", "--yolo"],
        "install_hint": "npm install -g @google/gemini-cli",
    },
)


class AgentProfileLoadError(ConfigError):
    """Raised when one or more agent definition files cannot be parsed."""


class UnknownAgentError(ConfigError):
    """Raised when the configured agent id has no definition."""


class AgentNotFoundError(ConfigError):
    """Raised when the agent executable cannot be located."""


class AgentRegistry:
    """Loads agent definitions and resolves them into invocation descriptors."""

    def __init__(
        self,
        search_paths: Iterable[Path] | None = None,
        *,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._which = which

    @property
    def search_paths(self) -> list[Path]:
        """Return the normalized search paths."""

        return list(self._search_paths)

    def load_all(self) -> dict[str, AgentDefinition]:
        """Return built-in definitions merged with YAML files from the search paths.

        Later search paths override earlier ones (and the built-ins) when ids collide.
        """

        agents = {
            definition.id: definition
            for definition in (AgentDefinition.model_validate(item) for item in BUILTIN_AGENTS)
        }
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    definition = AgentDefinition.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Agent definition error in {path}: {exc}")
                    continue

                agents[definition.id] = definition

        if errors:
            raise AgentProfileLoadError("; ".join(errors))

        return agents

    def get(self, agent_id: str) -> AgentDefinition:
        """Return a single definition by id."""

        agents = self.load_all()
        try:
            return agents[agent_id.strip().lower()]
        except KeyError as exc:
            known = ", ".join(sorted(agents))
            raise UnknownAgentError(f"Unknown agent '{agent_id}' (known agents: {known})") from exc

    def _resolve_executable(self, definition: AgentDefinition, explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"{definition.name} executable not found at {candidate}")

        binary = self._which(definition.command)
        if binary is None:
            message = f"{definition.name} executable '{definition.command}' not found on PATH"
            if definition.install_hint:
                message += f"; install with: {definition.install_hint}"
            raise AgentNotFoundError(message)
        return Path(binary)

    def is_installed(self, agent_id: str) -> bool:
        return self._which(self.get(agent_id).command) is not None

    def resolve(
        self,
        agent_id: str,
        *,
        model: str | None = None,
        verbose: bool = False,
        executable: Path | None = None,
    ) -> AgentInvocation:
        """Turn an agent id into a spawnable command, or raise a configuration error."""

        definition = self.get(agent_id)
        return AgentInvocation(
            agent_id=definition.id,
            executable=self._resolve_executable(definition, executable),
            args=tuple(definition.build_args(model=model, verbose=verbose)),
            env=sanitize_environment(definition.env),
        )


__all__ = [
    "AgentNotFoundError",
    "AgentProfileLoadError",
    "AgentRegistry",
    "BUILTIN_AGENTS",
    "UnknownAgentError",
]
