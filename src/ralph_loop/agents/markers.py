"""Classify agent output into an iteration outcome.

Agents report completion by printing literal markers:

* ``<TASK_DONE>`` when the assigned task is finished;
* ``<TASK_BLOCKED reason="...">`` when they cannot proceed.

Markers may appear anywhere in the captured output, including inside
JSON-stream events where the reason's quotes arrive escaped (``\\"``).
Blocked takes precedence over Done. A clean exit with neither marker is
reported as an ambiguous failure rather than assumed to be success.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Union

DONE_MARKER = "<TASK_DONE>"

_BLOCKED_PATTERN = re.compile(r'<TASK_BLOCKED\s+reason=\\?"((?:[^"\\]|\\[^"])*)\\?"\s*>')


class FailureCause(str, Enum):
    PROCESS_ERROR = "process_error"
    TIMEOUT = "timeout"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True, slots=True)
class Done:
    pass


@dataclass(frozen=True, slots=True)
class Blocked:
    reason: str


@dataclass(frozen=True, slots=True)
class Failed:
    cause: FailureCause
    detail: str = ""


AgentOutcome = Union[Done, Blocked, Failed]


def find_blocked_reason(output: str) -> str | None:
    """Return the reason of the first blocked marker in ``output``, if any."""

    match = _BLOCKED_PATTERN.search(output)
    if match is None:
        return None
    return match.group(1)


def classify_output(
    output: str,
    *,
    returncode: int,
    stderr: str = "",
    timed_out: bool = False,
) -> AgentOutcome:
    """Map captured agent output and exit status to an outcome."""

    if timed_out:
        return Failed(FailureCause.TIMEOUT, "agent exceeded its wall-clock timeout and was terminated")

    reason = find_blocked_reason(output)
    if reason is not None:
        return Blocked(reason)

    if returncode != 0:
        detail = stderr.strip() or f"agent exited with code {returncode}"
        return Failed(FailureCause.PROCESS_ERROR, detail)

    if DONE_MARKER in output:
        return Done()

    return Failed(
        FailureCause.AMBIGUOUS,
        f"agent exited cleanly without printing {DONE_MARKER} or <TASK_BLOCKED reason=\"...\">",
    )


def describe(outcome: AgentOutcome) -> str:
    """One-line human description of an outcome, used in logs."""

    if isinstance(outcome, Done):
        return "done"
    if isinstance(outcome, Blocked):
        return f"blocked: {outcome.reason}"
    summary = outcome.detail.strip().splitlines()[0] if outcome.detail.strip() else ""
    if summary:
        return f"failed ({outcome.cause.value}): {summary}"
    return f"failed ({outcome.cause.value})"


__all__ = [
    "AgentOutcome",
    "Blocked",
    "DONE_MARKER",
    "Done",
    "Failed",
    "FailureCause",
    "classify_output",
    "describe",
    "find_blocked_reason",
]
