"""Child process execution utilities."""

from .runner import (
    FakeProcessRunner,
    ProcessCancelled,
    ProcessResult,
    ProcessRunner,
)
from .utils import sanitize_environment, truncate_middle

__all__ = [
    "FakeProcessRunner",
    "ProcessCancelled",
    "ProcessResult",
    "ProcessRunner",
    "sanitize_environment",
    "truncate_middle",
]
