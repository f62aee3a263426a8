"""Extract the task currently in progress from IMPLEMENTATION_PLAN.md."""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from ..paths import ProjectPaths

_HEADING = re.compile(r"^#{1,6}\s")
_IN_PROGRESS_HEADING = re.compile(r"^#{1,6}\s+In Progress\b", re.IGNORECASE)
_TASK_PATH = r"(specs/[\w.-]+\.md)"
# "- specs/x.md", "- [ ] specs/x.md", "- [Label](specs/x.md)", "- [x] [Label](specs/x.md)"
_BARE_ITEM = re.compile(r"^[-*]\s*(?:\[.?\]\s*)?" + _TASK_PATH)
_LINK_ITEM = re.compile(r"^[-*]\s*(?:\[.?\]\s*)?\[[^\]]+\]\(\s*" + _TASK_PATH + r"\s*\)")
_LEADING_NUMBER = re.compile(r"^\d+-")


def task_name_from_path(path: str) -> str:
    """``"specs/011-telegram-notifications.md"`` -> ``"011-telegram-notifications"``."""

    return PurePosixPath(path).stem


def task_title(task: str) -> str:
    """Derive a display title from a task reference.

    ``"007-extract-task-manager-hook"`` -> ``"Extract Task Manager Hook"``.
    """

    words = _LEADING_NUMBER.sub("", task).split("-")
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def extract_current_task(content: str) -> str | None:
    """Return the first task reference listed under the "In Progress" heading."""

    in_section = False
    in_comment = False

    for line in content.splitlines():
        stripped = line.strip()

        if in_comment:
            if "-->" in stripped:
                in_comment = False
            continue

        if stripped.startswith("<!--"):
            in_comment = "-->" not in stripped
            continue

        if not in_section:
            if _IN_PROGRESS_HEADING.match(stripped):
                in_section = True
            continue

        if _HEADING.match(stripped):
            break

        if not stripped:
            continue

        match = _BARE_ITEM.match(stripped) or _LINK_ITEM.match(stripped)
        if match:
            return task_name_from_path(match.group(1))

    return None


def current_task(paths: ProjectPaths) -> str | None:
    """Read the project's plan and return its current task, or None if there is no plan."""

    try:
        content = paths.plan_file.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return extract_current_task(content)


def spec_title(paths: ProjectPaths, task: str) -> str:
    """Title of ``task``: its spec's first ``# `` heading, else the title derived from its name."""

    try:
        first_line = paths.spec_file(task).read_text(encoding="utf-8").split("\n", 1)[0].strip()
    except FileNotFoundError:
        return task_title(task)

    if first_line.startswith("# "):
        return first_line[2:].strip()
    return task_title(task)


def current_task_title(paths: ProjectPaths) -> str | None:
    task = current_task(paths)
    if task is None:
        return None
    return spec_title(paths, task)


__all__ = [
    "current_task",
    "current_task_title",
    "extract_current_task",
    "spec_title",
    "task_name_from_path",
    "task_title",
]
