"""Pause/stop signalling between the operator and a running loop."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_STOP_REASON = "stopped by operator"


class CancellationToken:
    """Carries operator pause/resume/stop requests into the loop.

    The controller checks the token at iteration boundaries and the process
    runner races it against every child-process wait.
    """

    def __init__(self) -> None:
        self._stopped = asyncio.Event()
        self._running = asyncio.Event()
        self._running.set()
        self._reason: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stopped.is_set()

    @property
    def pause_requested(self) -> bool:
        return not self._running.is_set()

    @property
    def reason(self) -> str:
        return self._reason or DEFAULT_STOP_REASON

    def stop(self, reason: str | None = None) -> None:
        if not self._stopped.is_set():
            self._reason = reason
        self._stopped.set()
        # wake anyone parked in wait_resumed()
        self._running.set()

    def pause(self) -> None:
        if not self._stopped.is_set():
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def wait_resumed(self) -> bool:
        """Block while paused; return False when woken by a stop instead of a resume."""

        await self._running.wait()
        return not self._stopped.is_set()


def install_signal_handlers(
    token: CancellationToken,
    loop: asyncio.AbstractEventLoop | None = None,
) -> Callable[[], None]:
    """Route operator signals to ``token`` and return a callable that undoes it.

    SIGINT and SIGTERM request a stop, SIGUSR1 pauses and SIGUSR2 resumes.
    """

    loop = loop or asyncio.get_running_loop()
    handlers: dict[signal.Signals, Callable[[], None]] = {
        signal.SIGINT: lambda: token.stop("interrupted by SIGINT"),
        signal.SIGTERM: token.stop,
        signal.SIGUSR1: token.pause,
        signal.SIGUSR2: token.resume,
    }
    installed: list[signal.Signals] = []
    for signum, handler in handlers.items():
        try:
            loop.add_signal_handler(signum, handler)
        except (NotImplementedError, RuntimeError):
            logger.warning("Signal handler unavailable", extra={"signal": signum.name})
            continue
        installed.append(signum)

    def remove() -> None:
        for signum in installed:
            loop.remove_signal_handler(signum)

    return remove

__all__ = ["CancellationToken", "DEFAULT_STOP_REASON", "install_signal_handlers"]
