"""Build loop controller: iterations, retries and the session state machine."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from ..agents import AgentDriver, AgentInvocation, Blocked, Done, Failed, describe
from ..cancellation import CancellationToken
from ..config import ProjectConfig, RalphSettings
from ..errors import NoTaskError
from ..gates import GateRunner, parse_gates
from ..logs import SessionLog
from ..paths import ProjectPaths
from ..plan import current_task, spec_title
from ..process import ProcessCancelled
from ..storage import Session, SessionMode, SessionPersistenceError, SessionStore
from ..storage.models import SessionStatus, new_session_id
from .prompts import FailureContext, compose_build_prompt, compose_plan_prompt

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


@dataclass(slots=True)
class LoopResult:
    session: Session
    exit_code: int
    interrupted: bool = False


@dataclass(slots=True)
class _Step:
    """What one iteration decided: a terminal status, or a retry with context."""

    status: SessionStatus | None = None
    reason: str | None = None
    exit_code: int = EXIT_OK
    retry: FailureContext | None = None


class RetryBudget:
    """Counts failed attempts against the retry ceiling.

    With a shared budget agent and gate failures draw from one counter;
    otherwise each kind has its own ``max_retries`` allowance.
    """

    def __init__(self, max_retries: int, *, shared: bool = True) -> None:
        self._max_retries = max_retries
        self._shared = shared
        self._counts = {"agent": 0, "gate": 0}

    @property
    def failures(self) -> int:
        return sum(self._counts.values())

    def charge(self, kind: str) -> bool:
        """Record a failure; return True while a retry remains."""

        self._counts[kind] += 1
        used = self.failures if self._shared else self._counts[kind]
        return used <= self._max_retries

    def reset(self) -> None:
        for kind in self._counts:
            self._counts[kind] = 0


class BuildLoopController:
    """Drive one session from start to a terminal status.

    Iterations run strictly one after another. Pause and stop requests arrive
    through the cancellation token; the session record is persisted after
    every transition and every completed iteration.
    """

    def __init__(
        self,
        *,
        paths: ProjectPaths,
        config: ProjectConfig,
        settings: RalphSettings,
        invocation: AgentInvocation,
        store: SessionStore,
        agent_driver: AgentDriver,
        gate_runner: GateRunner,
        mode: SessionMode = "build",
        token: CancellationToken | None = None,
        task_reader: Callable[[ProjectPaths], str | None] = current_task,
        pid: int | None = None,
    ) -> None:
        self._paths = paths
        self._config = config
        self._invocation = invocation
        self._store = store
        self._agent = agent_driver
        self._gate_runner = gate_runner
        self._gates = parse_gates(config.quality_gates)
        self._mode = mode
        self._token = token or CancellationToken()
        self._task_reader = task_reader
        self._pid = pid if pid is not None else os.getpid()
        self._max_iterations = config.max_iterations
        self._budget = RetryBudget(
            config.retry_ceiling(settings), shared=config.retry_budget == "shared"
        )
        self._session: Session | None = None
        self._carry: FailureContext | None = None

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def session(self) -> Session | None:
        return self._session

    def _new_session(self) -> Session:
        session_id = new_session_id()
        return Session(
            id=session_id,
            project_id=self._paths.project_id,
            mode=self._mode,
            pid=self._pid,
            started_at=self._store.now(),
            agent=self._invocation.agent_id,
            model=self._config.model,
            log_file=str(self._paths.session_log(session_id)),
        )

    async def run(self) -> LoopResult:
        """Create the session and loop until it reaches a terminal status.

        Raises ``SessionConflictError`` (before anything is written) when the
        project already has an active session, and ``SessionPersistenceError``
        when the record cannot be saved. Any other error ends the session as
        ``stopped`` with the error recorded as its reason.
        """

        session = self._store.create(self._new_session())
        self._session = session
        logger.info(
            "Session started",
            extra={"session_id": session.id, "mode": session.mode, "agent": session.agent},
        )

        try:
            log = SessionLog(Path(session.log_file))
        except OSError as exc:
            logger.error("Cannot open session log", extra={"session_id": session.id, "error": str(exc)})
            session.transition("stopped", at=self._store.now(), reason=f"fatal: cannot open session log: {exc}")
            self._store.save(session)
            raise

        with log:
            try:
                log.line(
                    f"Starting {session.mode} loop - session {session.id}, agent {session.agent}, "
                    f"model {session.model or 'default'}"
                )
                return await self._loop(session, log)
            except SessionPersistenceError as exc:
                log.line(f"FATAL: {exc}")
                logger.error("Session persistence failed", extra={"session_id": session.id, "error": str(exc)})
                raise
            except asyncio.CancelledError:
                if session.is_active:
                    self._finish(session, log, "stopped", "controller cancelled during an iteration", count=False)
                raise
            except Exception as exc:
                logger.exception("Build loop failed", extra={"session_id": session.id})
                return self._result(self._abort(session, log, exc), EXIT_FAILURE)

    async def _loop(self, session: Session, log: SessionLog) -> LoopResult:
        while True:
            if self._max_iterations and session.iteration >= self._max_iterations:
                reason = f"reached max iterations ({self._max_iterations})"
                return self._result(self._finish(session, log, "stopped", reason, count=False), EXIT_OK)

            if self._token.pause_requested and not self._token.stop_requested:
                self._transition(session, log, "paused")
                if await self._token.wait_resumed():
                    self._transition(session, log, "running")

            if self._token.stop_requested:
                return self._result(
                    self._finish(session, log, "stopped", self._token.reason, count=False), EXIT_OK
                )

            try:
                step = await self._iterate(session, log)
            except ProcessCancelled:
                reason = f"{self._token.reason} (interrupted iteration {session.iteration + 1})"
                finished = self._finish(session, log, "stopped", reason, count=False)
                return self._result(finished, EXIT_INTERRUPTED, interrupted=True)
            except NoTaskError as exc:
                return self._result(self._finish(session, log, "stopped", str(exc), count=False), EXIT_FAILURE)

            if step.status is not None:
                return self._result(self._finish(session, log, step.status, step.reason), step.exit_code)

            self._carry = step.retry
            session.record_iteration()
            self._store.save(session)
            log.line(f"iteration {session.iteration} failed; retrying ({self._budget.failures} failure(s) so far)")

    async def _iterate(self, session: Session, log: SessionLog) -> _Step:
        task: str | None = None
        if self._mode == "build":
            task = self._task_reader(self._paths)
            if task is None:
                raise NoTaskError(f"No task in progress in {self._paths.plan_file}")
            if task != session.task:
                if session.task is not None:
                    log.line(f"current task changed from {session.task} to {task}")
                self._budget.reset()
                self._carry = None
                session.task = task
            prompt = compose_build_prompt(
                task,
                title=spec_title(self._paths, task),
                spec_path=str(self._paths.spec_file(task).relative_to(self._paths.root)),
                failure=self._carry,
                attempt=self._budget.failures + 1,
            )
        else:
            prompt = compose_plan_prompt(failure=self._carry, attempt=self._budget.failures + 1)

        log.iteration_marker(session.iteration + 1, task)
        log.section("prompt:", prompt)

        outcome = await self._agent.run(
            self._invocation, prompt, cwd=self._paths.root, log=log, cancel=self._token
        )

        if isinstance(outcome, Blocked):
            return _Step(status="stopped", reason=f"agent blocked: {outcome.reason}", exit_code=EXIT_FAILURE)

        if isinstance(outcome, Failed):
            if self._budget.charge("agent"):
                return _Step(retry=FailureContext.from_agent(outcome))
            return _Step(
                status="stopped",
                reason=f"retries exhausted; last agent failure: {describe(outcome)}",
                exit_code=EXIT_FAILURE,
            )

        assert isinstance(outcome, Done)
        if self._mode == "plan" or not self._gates:
            return _Step(status="completed", reason="agent signaled done")

        result = await self._gate_runner.run(
            self._gates, cwd=self._paths.root, log=log, cancel=self._token
        )
        if result.succeeded:
            return _Step(status="completed", reason="agent signaled done and all gates passed")
        if self._budget.charge("gate"):
            return _Step(retry=FailureContext.from_gate(result))
        return _Step(
            status="stopped",
            reason=f"retries exhausted; gate {result.gate_name} failed with exit code {result.exit_code}",
            exit_code=EXIT_FAILURE,
        )

    def _transition(self, session: Session, log: SessionLog, status: SessionStatus, reason: str | None = None) -> None:
        previous = session.status
        session.transition(status, at=self._store.now(), reason=reason)
        self._store.save(session)
        log.line(f"session {previous} -> {status}" + (f": {reason}" if reason else ""))
        logger.info(
            "Session transition",
            extra={"session_id": session.id, "from": previous, "to": status, "reason": reason},
        )

    def _finish(
        self,
        session: Session,
        log: SessionLog,
        status: SessionStatus,
        reason: str | None,
        *,
        count: bool = True,
    ) -> Session:
        """Apply a terminal transition, count the iteration that caused it, persist."""

        previous = session.status
        session.transition(status, at=self._store.now(), reason=reason)
        if count:
            session.record_iteration()
        self._store.save(session)
        log.line(f"session {previous} -> {status}: {reason} (after {session.iteration} iteration(s))")
        logger.info(
            "Session finished",
            extra={
                "session_id": session.id,
                "status": status,
                "reason": reason,
                "iteration": session.iteration,
            },
        )
        return session

    def _abort(self, session: Session, log: SessionLog, exc: Exception) -> Session:
        """Stop the session after an unexpected error, recording its cause."""

        reason = f"fatal: {type(exc).__name__}: {exc}"
        if session.is_active:
            session.transition("stopped", at=self._store.now(), reason=reason)
            self._store.save(session)
        try:
            log.line(f"FATAL: {reason} (after {session.iteration} iteration(s))")
        except OSError as log_exc:
            logger.warning(
                "Could not write to session log",
                extra={"session_id": session.id, "error": str(log_exc)},
            )
        return session

    @staticmethod
    def _result(session: Session, exit_code: int, *, interrupted: bool = False) -> LoopResult:
        return LoopResult(session=session, exit_code=exit_code, interrupted=interrupted)


__all__ = [
    "BuildLoopController",
    "EXIT_FAILURE",
    "EXIT_INTERRUPTED",
    "EXIT_OK",
    "LoopResult",
    "RetryBudget",
]
