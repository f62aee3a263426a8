"""Session persistence over a pluggable backend."""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, ContextManager, Iterator, Protocol

from pydantic import ValidationError

from ..errors import RalphError
from .models import Session

logger = logging.getLogger(__name__)

STALE_REASON = "controller exited without recording a final state"


class SessionPersistenceError(RalphError):
    """Raised when a session record cannot be written or read back."""


class SessionNotFoundError(RalphError):
    """Raised when no session exists with the requested id."""


class SessionConflictError(RalphError):
    """Raised when a project already has an active session."""

    def __init__(self, existing: Session) -> None:
        super().__init__(
            f"Project {existing.project_id} already has a {existing.status} session "
            f"({existing.id}, mode {existing.mode}); stop it first"
        )
        self.existing = existing


class SessionBackend(Protocol):
    """Protocol for the minimal record storage API used by the session store."""

    def write(self, session_id: str, document: str) -> None:
        ...

    def read(self, session_id: str) -> str | None:
        ...

    def read_all(self) -> list[str]:
        ...

    def lock(self, name: str) -> ContextManager[None]:
        """Hold an exclusive lock named ``name`` for the duration of the block."""
        ...


class FileSessionBackend:
    """One JSON document per session, replaced atomically on every write."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, session_id: str) -> Path:
        return self._directory / f"{session_id}.json"

    def write(self, session_id: str, document: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=f".{session_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(document)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path(session_id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def read(self, session_id: str) -> str | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def read_all(self) -> list[str]:
        if not self._directory.exists():
            return []
        return [path.read_text(encoding="utf-8") for path in sorted(self._directory.glob("*.json"))]

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        self._directory.mkdir(parents=True, exist_ok=True)
        with open(self._directory / f"{name}.lock", "a", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class MemorySessionBackend:
    """In-process backend for tests and embedding."""

    def __init__(self) -> None:
        self.documents: dict[str, str] = {}
        self.writes = 0
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def write(self, session_id: str, document: str) -> None:
        self.writes += 1
        self.documents[session_id] = document

    def read(self, session_id: str) -> str | None:
        return self.documents.get(session_id)

    def read_all(self) -> list[str]:
        return list(self.documents.values())

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
        with lock:
            yield


def pid_alive(pid: int) -> bool:
    """Return True when a process with ``pid`` exists on this host."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SessionStore:
    """Create, update and query session records.

    The owning controller is the only writer of a session while it runs;
    status/list/log readers may read at any time.
    """

    def __init__(
        self,
        backend: SessionBackend,
        *,
        clock: Callable[[], datetime] | None = None,
        is_alive: Callable[[int], bool] = pid_alive,
    ) -> None:
        self._backend = backend
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._is_alive = is_alive

    @property
    def backend(self) -> SessionBackend:
        return self._backend

    def now(self) -> datetime:
        return self._clock()

    def _decode(self, document: str) -> Session:
        try:
            return Session.model_validate_json(document)
        except ValidationError as exc:
            raise SessionPersistenceError(f"Corrupt session record: {exc}") from exc

    def save(self, session: Session) -> Session:
        session.updated_at = self._clock()
        try:
            self._backend.write(session.id, session.model_dump_json(indent=2))
        except OSError as exc:
            raise SessionPersistenceError(f"Failed to persist session {session.id}: {exc}") from exc
        return session

    def get(self, session_id: str) -> Session:
        try:
            document = self._backend.read(session_id)
        except OSError as exc:
            raise SessionPersistenceError(f"Failed to read session {session_id}: {exc}") from exc
        if document is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return self._decode(document)

    def list_sessions(self, project_id: str | None = None) -> list[Session]:
        """Return sessions, newest first."""

        try:
            documents = self._backend.read_all()
        except OSError as exc:
            raise SessionPersistenceError(f"Failed to list sessions: {exc}") from exc

        sessions: list[Session] = []
        for document in documents:
            try:
                session = self._decode(document)
            except SessionPersistenceError as exc:
                logger.warning("Skipping unreadable session record", extra={"error": str(exc)})
                continue
            if project_id is None or session.project_id == project_id:
                sessions.append(session)
        sessions.sort(key=lambda item: item.started_at, reverse=True)
        return sessions

    def latest(self, project_id: str) -> Session | None:
        sessions = self.list_sessions(project_id)
        return sessions[0] if sessions else None

    def active(self, project_id: str) -> list[Session]:
        """Return the project's running/paused sessions, reaping stale ones."""

        live: list[Session] = []
        for session in self.list_sessions(project_id):
            if not session.is_active:
                continue
            if session.pid is not None and not self._is_alive(session.pid):
                self._reap(session)
                continue
            live.append(session)
        return live

    def _reap(self, session: Session) -> None:
        logger.warning(
            "Marking stale session as stopped",
            extra={"session_id": session.id, "pid": session.pid, "iteration": session.iteration},
        )
        session.transition("stopped", at=self._clock(), reason=STALE_REASON)
        self.save(session)

    def create(self, session: Session) -> Session:
        """Persist a new session, refusing when the project already has an active one.

        The check and the write happen under the project's lock, so concurrent
        starts cannot both succeed. The existing session is left untouched on
        conflict.
        """

        try:
            with self._backend.lock(session.project_id):
                active = self.active(session.project_id)
                if active:
                    raise SessionConflictError(active[0])
                return self.save(session)
        except OSError as exc:
            raise SessionPersistenceError(f"Failed to lock sessions of {session.project_id}: {exc}") from exc


__all__ = [
    "FileSessionBackend",
    "MemorySessionBackend",
    "STALE_REASON",
    "SessionBackend",
    "SessionConflictError",
    "SessionNotFoundError",
    "SessionPersistenceError",
    "SessionStore",
    "pid_alive",
]
