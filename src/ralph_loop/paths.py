"""Per-project file layout."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path

RALPH_DIR_NAME = ".ralph-wiggum"
CONFIG_FILE_NAMES = ("config.yaml", "config.yml", "config.json")
PLAN_FILE_NAME = "IMPLEMENTATION_PLAN.md"

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def project_id_for(root: Path) -> str:
    """Return a stable identifier for the project rooted at ``root``."""

    resolved = Path(root).expanduser().resolve()
    slug = _SLUG_PATTERN.sub("-", resolved.name.lower()).strip("-") or "project"
    digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


@dataclass(frozen=True, slots=True)
class ProjectPaths:
    """Locations of the files the build loop reads and writes for one project."""

    root: Path

    @classmethod
    def for_root(cls, root: Path | str) -> "ProjectPaths":
        return cls(Path(root).expanduser().resolve())

    @property
    def project_id(self) -> str:
        return project_id_for(self.root)

    @property
    def ralph_dir(self) -> Path:
        return self.root / RALPH_DIR_NAME

    @property
    def config_file(self) -> Path:
        """Return the first existing config file, or the default YAML location."""

        for name in CONFIG_FILE_NAMES:
            candidate = self.ralph_dir / name
            if candidate.exists():
                return candidate
        return self.ralph_dir / CONFIG_FILE_NAMES[0]

    @property
    def plan_file(self) -> Path:
        return self.ralph_dir / PLAN_FILE_NAME

    @property
    def specs_dir(self) -> Path:
        return self.ralph_dir / "specs"

    @property
    def logs_dir(self) -> Path:
        return self.ralph_dir / "logs"

    @property
    def sessions_dir(self) -> Path:
        return self.ralph_dir / "sessions"

    def session_log(self, session_id: str) -> Path:
        return self.logs_dir / f"{session_id}.log"

    def spec_file(self, task: str) -> Path:
        return self.specs_dir / f"{task}.md"


__all__ = [
    "CONFIG_FILE_NAMES",
    "PLAN_FILE_NAME",
    "ProjectPaths",
    "RALPH_DIR_NAME",
    "project_id_for",
]
