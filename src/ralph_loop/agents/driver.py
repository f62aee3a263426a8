"""Run one agent iteration and classify its outcome."""

from __future__ import annotations

import logging
from pathlib import Path

from ..cancellation import CancellationToken
from ..logs import SessionLog
from ..process import ProcessRunner
from .markers import AgentOutcome, Failed, FailureCause, classify_output, describe
from .models import AgentInvocation

logger = logging.getLogger(__name__)


class AgentDriver:
    """Spawn the agent, deliver the prompt on stdin and classify what it printed."""

    def __init__(self, runner: ProcessRunner, *, timeout: float) -> None:
        self._runner = runner
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    async def run(
        self,
        invocation: AgentInvocation,
        prompt: str,
        *,
        cwd: Path | None = None,
        log: SessionLog | None = None,
        cancel: CancellationToken | None = None,
    ) -> AgentOutcome:
        """Run one agent process.

        Raises ``ProcessCancelled`` when a stop request interrupts the agent;
        every other failure is returned as a ``Failed`` outcome.
        """

        if log is not None:
            log.line(f"agent {invocation.agent_id}: {' '.join(invocation.command)}")

        try:
            result = await self._runner.run(
                invocation.command,
                input=prompt,
                env=invocation.env,
                cwd=cwd,
                timeout=self._timeout,
                on_output=log.raw if log is not None else None,
                cancel=cancel,
            )
        except OSError as exc:
            outcome: AgentOutcome = Failed(FailureCause.PROCESS_ERROR, f"failed to launch agent: {exc}")
            logger.error(
                "Agent launch failed",
                extra={"agent": invocation.agent_id, "error": str(exc)},
            )
        else:
            outcome = classify_output(
                result.output,
                returncode=result.returncode,
                stderr=result.stderr,
                timed_out=result.timed_out,
            )
            if log is not None:
                log.line(
                    f"agent exited with code {result.returncode}"
                    + (" after timeout" if result.timed_out else "")
                )

        if log is not None:
            log.line(f"agent outcome: {describe(outcome)}")
        logger.info(
            "Agent iteration finished",
            extra={"agent": invocation.agent_id, "outcome": describe(outcome)},
        )
        return outcome


__all__ = ["AgentDriver"]
