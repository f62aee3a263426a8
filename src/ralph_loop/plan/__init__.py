"""Plan document parsing."""

from .reader import (
    current_task,
    current_task_title,
    extract_current_task,
    spec_title,
    task_name_from_path,
    task_title,
)

__all__ = [
    "current_task",
    "current_task_title",
    "extract_current_task",
    "spec_title",
    "task_name_from_path",
    "task_title",
]
