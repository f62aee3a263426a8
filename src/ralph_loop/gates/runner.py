"""Fail-fast runner for external verification commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..cancellation import CancellationToken
from ..config import GateConfig
from ..logs import SessionLog
from ..process import ProcessRunner

logger = logging.getLogger(__name__)

ALL_GATES_PASSED = "all"
TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True, slots=True)
class Gate:
    name: str
    command: str


@dataclass(slots=True)
class GateResult:
    """Outcome of the gate run; on failure, the first failing gate."""

    gate_name: str
    exit_code: int
    output: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def parse_gates(entries: Iterable[str | GateConfig]) -> list[Gate]:
    """Turn configured gate entries into named gates.

    A bare command is named after its last word: ``"uv run pytest"`` -> ``pytest``.
    """

    gates: list[Gate] = []
    for entry in entries:
        if isinstance(entry, GateConfig):
            command = entry.command
            name = entry.name or command.split()[-1]
        else:
            command = entry.strip()
            if not command:
                continue
            name = command.split()[-1]
        gates.append(Gate(name=name, command=command))
    return gates


class GateRunner:
    """Run gates in order through the shell, stopping at the first failure."""

    def __init__(self, runner: ProcessRunner, *, timeout: float) -> None:
        self._runner = runner
        self._timeout = timeout

    async def run(
        self,
        gates: Iterable[Gate],
        *,
        cwd: Path | None = None,
        log: SessionLog | None = None,
        cancel: CancellationToken | None = None,
    ) -> GateResult:
        """Return the first failing gate's result, or a synthetic success.

        Raises ``ProcessCancelled`` when a stop request interrupts a gate.
        """

        for gate in gates:
            if log is not None:
                log.line(f"gate {gate.name}: {gate.command}")
            process = await self._runner.run(
                gate.command,
                cwd=cwd,
                timeout=self._timeout,
                cancel=cancel,
            )
            exit_code = TIMEOUT_EXIT_CODE if process.timed_out else process.returncode
            output = process.output
            if process.timed_out:
                output += f"\n{gate.name} timed out after {self._timeout:g}s and was terminated\n"
            result = GateResult(
                gate_name=gate.name,
                exit_code=exit_code,
                output=output,
                timed_out=process.timed_out,
            )

            if log is not None:
                status = "passed" if result.succeeded else f"FAILED (exit code {result.exit_code})"
                log.section(f"gate {gate.name} {status}", result.output)
            logger.info(
                "Gate finished",
                extra={"gate": gate.name, "exit_code": result.exit_code},
            )

            if not result.succeeded:
                return result

        return GateResult(gate_name=ALL_GATES_PASSED, exit_code=0, output="")


__all__ = ["ALL_GATES_PASSED", "Gate", "GateResult", "GateRunner", "TIMEOUT_EXIT_CODE", "parse_gates"]
