"""Append-only per-session log and its readers."""

from __future__ import annotations

import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator


class SessionLog:
    """Line-oriented, append-only session log.

    Controller messages are written as ``[timestamp] message`` lines; agent
    and gate output is appended verbatim. Every write is flushed so tailers
    see it immediately.
    """

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handle = self._path.open("a", encoding="utf-8")
        self._at_line_start = True

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, text: str) -> None:
        if not text:
            return
        self._handle.write(text)
        self._handle.flush()
        self._at_line_start = text.endswith("\n")

    def line(self, message: str) -> None:
        prefix = "" if self._at_line_start else "\n"
        self._write(f"{prefix}[{self._clock().isoformat()}] {message}\n")

    def raw(self, text: str) -> None:
        self._write(text)

    def iteration_marker(self, iteration: int, task: str | None = None) -> None:
        label = f"iteration {iteration}" + (f" - {task}" if task else "")
        self.line(f"{'=' * 20} {label} {'=' * 20}")

    def section(self, title: str, body: str) -> None:
        self.line(title)
        self.raw(body if body.endswith("\n") or not body else body + "\n")

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()

    def __enter__(self) -> "SessionLog":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def tail_lines(path: Path, lines: int = 50) -> list[str]:
    """Return the last ``lines`` lines of the log at ``path``."""

    with Path(path).open("r", encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=max(lines, 0))]


def follow(
    path: Path,
    *,
    lines: int = 50,
    poll_interval: float = 0.5,
    should_stop: Callable[[], bool] = lambda: False,
) -> Iterator[str]:
    """Yield the last ``lines`` lines, then each new line as it is appended.

    Stops once ``should_stop`` returns True and everything written so far
    has been yielded.
    """

    with Path(path).open("r", encoding="utf-8", errors="replace") as handle:
        for line in deque(handle, maxlen=max(lines, 0)):
            yield line.rstrip("\n")
        pending = ""
        while True:
            chunk = handle.readline()
            if not chunk:
                if should_stop():
                    break
                time.sleep(poll_interval)
                continue
            pending += chunk
            if pending.endswith("\n"):
                yield pending.rstrip("\n")
                pending = ""
        if pending:
            yield pending


__all__ = ["SessionLog", "follow", "tail_lines"]
