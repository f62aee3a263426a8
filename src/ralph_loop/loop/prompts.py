"""Prompt composition for build and plan iterations."""

from __future__ import annotations

from dataclasses import dataclass

from ..agents import DONE_MARKER, Failed
from ..gates import GateResult
from ..process.utils import truncate_middle

MAX_FAILURE_OUTPUT = 4000

BUILD_RULES = """# Build Mode

You are an autonomous coding agent working through a project backlog, one task per session.

## Rules
- Complete ONLY the assigned task; other tasks are assigned separately
- Search the codebase before assuming anything is missing
- No placeholders or stubs: implement completely
- Do NOT commit; commits are handled outside this session
- Do NOT run the quality gates yourself; they run automatically after you signal completion
- Read .ralph-wiggum/GUARDRAILS.md (if present) for project-specific rules"""

PLAN_RULES = """# Plan Mode

You are an autonomous planning agent. Analyze the specs in .ralph-wiggum/specs/ and the current
code, then write .ralph-wiggum/IMPLEMENTATION_PLAN.md.

## Rules
- Plan only: do NOT implement anything
- Confirm with code search before declaring functionality missing
- List the spec to work on next under a "## In Progress" heading as `- specs/<name>.md`
- Keep every spec's tasks and acceptance criteria concrete"""

MARKER_CONTRACT = f"""## Completion
When done, output exactly: {DONE_MARKER}
If you cannot proceed, output: <TASK_BLOCKED reason="why you are blocked">
(the reason must not contain double quotes)"""


@dataclass(frozen=True, slots=True)
class FailureContext:
    """What went wrong in the previous attempt, carried into the next prompt."""

    kind: str
    summary: str
    output: str = ""

    @classmethod
    def from_gate(cls, result: GateResult) -> "FailureContext":
        summary = f"Quality gate `{result.gate_name}` failed with exit code {result.exit_code}"
        if result.timed_out:
            summary += " (timed out)"
        return cls(kind="gate", summary=summary, output=result.output)

    @classmethod
    def from_agent(cls, outcome: Failed) -> "FailureContext":
        summaries = {
            "timeout": "The previous attempt ran out of time and was terminated",
            "ambiguous": (
                "The previous attempt ended without a completion marker; "
                "you must finish with one of the markers below"
            ),
            "process_error": "The previous attempt exited with an error",
        }
        return cls(kind="agent", summary=summaries[outcome.cause.value], output=outcome.detail)


def _failure_section(failure: FailureContext, attempt: int) -> str:
    lines = [
        "## Previous Attempt Failed",
        f"This is attempt #{attempt}. {failure.summary}.",
    ]
    if failure.output.strip():
        lines.append("```\n" + truncate_middle(failure.output.strip(), MAX_FAILURE_OUTPUT) + "\n```")
    lines.append("Fix the issues above, then complete the task.")
    return "\n\n".join(lines)


def compose_build_prompt(
    task: str,
    *,
    title: str,
    spec_path: str,
    failure: FailureContext | None = None,
    attempt: int = 1,
) -> str:
    sections = [
        BUILD_RULES,
        f"# Task: {title}\n\nTask reference: `{task}`\nSpec: @{spec_path}",
        "## Your Assignment\n\nRead the spec, implement what it asks for and make its acceptance criteria pass.",
    ]
    if failure is not None:
        sections.append(_failure_section(failure, attempt))
    sections.append(MARKER_CONTRACT)
    return "\n\n".join(sections) + "\n"


def compose_plan_prompt(*, failure: FailureContext | None = None, attempt: int = 1) -> str:
    sections = [PLAN_RULES]
    if failure is not None:
        sections.append(_failure_section(failure, attempt))
    sections.append(MARKER_CONTRACT)
    return "\n\n".join(sections) + "\n"


__all__ = ["FailureContext", "compose_build_prompt", "compose_plan_prompt"]
