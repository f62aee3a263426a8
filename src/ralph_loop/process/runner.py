"""Async runner for agent and gate child processes."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence, Union

from ..cancellation import CancellationToken

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]
Command = Union[str, Sequence[str]]

_READ_CHUNK = 4096


class ProcessCancelled(RuntimeError):
    """Raised when a stop request interrupts a running child process."""

    def __init__(self, result: "ProcessResult") -> None:
        super().__init__(f"Process {result.args[0] if result.args else '?'} cancelled by stop request")
        self.result = result


@dataclass(slots=True)
class ProcessResult:
    """Holds the outcome of one child process run."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.send_signal(sig)


class ProcessRunner:
    """Execute a command, feed it input and stream its output.

    A ``str`` command runs through the shell; a sequence is executed directly.
    Each child gets its own process group so termination reaches anything it
    spawned.
    """

    def __init__(self, *, kill_grace: float = 5.0) -> None:
        self._kill_grace = kill_grace

    async def run(
        self,
        command: Command,
        *,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProcessResult:
        stdin = asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL
        common: dict[str, Any] = {
            "stdin": stdin,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "env": dict(env) if env is not None else None,
            "cwd": str(cwd) if cwd is not None else None,
            "start_new_session": True,
        }
        if isinstance(command, str):
            args: tuple[str, ...] = (command,)
            process = await asyncio.create_subprocess_shell(command, **common)
        else:
            args = tuple(str(part) for part in command)
            process = await asyncio.create_subprocess_exec(*args, **common)

        logger.debug("Spawned child process", extra={"pid": process.pid, "command": args})

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        combined: list[str] = []

        async def _feed() -> None:
            if input is None or process.stdin is None:
                return
            try:
                process.stdin.write(input.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Child closed stdin before the input was written", extra={"pid": process.pid})
            finally:
                process.stdin.close()

        async def _pump(stream: asyncio.StreamReader | None, parts: list[str]) -> None:
            if stream is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await stream.read(_READ_CHUNK)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    parts.append(text)
                    combined.append(text)
                    if on_output is not None:
                        on_output(text)
                if not chunk:
                    return

        def _result(returncode: int, *, timed_out: bool = False) -> ProcessResult:
            return ProcessResult(
                args=args,
                returncode=returncode,
                stdout="".join(stdout_parts),
                stderr="".join(stderr_parts),
                output="".join(combined),
                timed_out=timed_out,
            )

        work = asyncio.ensure_future(
            asyncio.gather(
                _feed(),
                _pump(process.stdout, stdout_parts),
                _pump(process.stderr, stderr_parts),
                process.wait(),
            )
        )
        waiters: set[asyncio.Future[Any]] = {work}
        stop_waiter: asyncio.Future[Any] | None = None
        if cancel is not None:
            stop_waiter = asyncio.ensure_future(cancel.wait_stopped())
            waiters.add(stop_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._terminate(process)
            work.cancel()
            raise
        finally:
            if stop_waiter is not None:
                stop_waiter.cancel()

        if work in done:
            work.result()
            return _result(process.returncode if process.returncode is not None else -1)

        await self._terminate(process)
        await self._drain(work)
        returncode = process.returncode if process.returncode is not None else -1

        if stop_waiter is not None and stop_waiter in done:
            logger.info("Child process terminated by stop request", extra={"pid": process.pid})
            raise ProcessCancelled(_result(returncode))

        logger.warning(
            "Child process exceeded timeout",
            extra={"pid": process.pid, "timeout": timeout, "command": args},
        )
        return _result(returncode, timed_out=True)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            _signal_group(process, signal.SIGKILL)
            await process.wait()

    async def _drain(self, work: asyncio.Future[Any]) -> None:
        # pipes close once the group is gone; cap the wait in case a grandchild escaped it
        done, _ = await asyncio.wait({work}, timeout=self._kill_grace)
        if work in done:
            work.result()
        else:
            work.cancel()


ScriptedResponse = Union[ProcessResult, BaseException, Callable[["FakeInvocation"], ProcessResult]]


@dataclass(slots=True)
class FakeInvocation:
    command: Command
    input: str | None
    env: dict[str, str] | None
    cwd: str | None
    timeout: float | None


class FakeProcessRunner(ProcessRunner):
    """Test double that replays scripted process results.

    A scripted entry may be a ``ProcessResult``, an exception to raise, or a
    callable receiving the invocation. When a stop was requested while the
    scripted child "ran", ``ProcessCancelled`` is raised like the real runner.
    """

    def __init__(self, responses: Iterable[ScriptedResponse] | None = None) -> None:  # type: ignore[override]
        super().__init__(kill_grace=0.1)
        self._responses = list(responses or [])
        self._invocations: list[FakeInvocation] = []

    async def run(  # type: ignore[override]
        self,
        command: Command,
        *,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | str | None = None,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProcessResult:
        invocation = FakeInvocation(
            command=command,
            input=input,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
        )
        self._invocations.append(invocation)

        args = (command,) if isinstance(command, str) else tuple(str(part) for part in command)
        response: ScriptedResponse
        if self._responses:
            response = self._responses.pop(0)
        else:
            response = ProcessResult(args=args, returncode=0, stdout="", stderr="")

        if isinstance(response, BaseException):
            raise response
        result = response(invocation) if callable(response) else response
        if not result.output:
            result.output = result.stdout + result.stderr
        if on_output is not None and result.output:
            on_output(result.output)
        if cancel is not None and cancel.stop_requested:
            raise ProcessCancelled(result)
        return result

    @property
    def invocations(self) -> list[FakeInvocation]:
        return self._invocations

    @property
    def remaining(self) -> int:
        return len(self._responses)


__all__ = [
    "FakeInvocation",
    "FakeProcessRunner",
    "ProcessCancelled",
    "ProcessResult",
    "ProcessRunner",
]
