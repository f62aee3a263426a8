from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ralph_loop.storage import (
    FileSessionBackend,
    InvalidTransitionError,
    MemorySessionBackend,
    Session,
    SessionConflictError,
    SessionNotFoundError,
    SessionPersistenceError,
    SessionStore,
)
from ralph_loop.storage.store import STALE_REASON

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class StepClock:
    def __init__(self) -> None:
        self.current = T0

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


def make_session(session_id: str, *, project_id: str = "proj", started: datetime = T0, pid: int | None = 100) -> Session:
    return Session(
        id=session_id,
        project_id=project_id,
        pid=pid,
        started_at=started,
        agent="claude",
        log_file=f"/tmp/{session_id}.log",
    )


def test_transitions_follow_state_machine() -> None:
    session = make_session("a")

    session.transition("paused", at=T0)
    assert session.paused_at == T0
    session.transition("running", at=T0)
    assert session.paused_at is None
    session.transition("completed", at=T0, reason="done")
    assert session.is_terminal and session.stop_reason == "done"

    with pytest.raises(InvalidTransitionError):
        session.transition("running", at=T0)


def test_paused_session_cannot_complete() -> None:
    session = make_session("a")
    session.transition("paused", at=T0)

    with pytest.raises(InvalidTransitionError):
        session.transition("completed", at=T0)


def test_create_rejects_second_active_session_without_mutation() -> None:
    backend = MemorySessionBackend()
    store = SessionStore(backend, clock=StepClock(), is_alive=lambda pid: True)
    first = store.create(make_session("first"))
    before = backend.documents["first"]
    writes = backend.writes

    with pytest.raises(SessionConflictError) as excinfo:
        store.create(make_session("second"))

    assert excinfo.value.existing.id == first.id
    assert backend.documents["first"] == before
    assert "second" not in backend.documents
    assert backend.writes == writes


class SlowListingBackend(FileSessionBackend):
    def read_all(self) -> list[str]:
        documents = super().read_all()
        time.sleep(0.2)
        return documents


def test_concurrent_creates_admit_only_one_session(tmp_path: Path) -> None:
    backend = SlowListingBackend(tmp_path / "sessions")
    start = threading.Barrier(2)
    created: list[str] = []
    conflicts: list[SessionConflictError] = []

    def start_session(session_id: str) -> None:
        store = SessionStore(backend, is_alive=lambda pid: True)
        start.wait()
        try:
            created.append(store.create(make_session(session_id)).id)
        except SessionConflictError as exc:
            conflicts.append(exc)

    threads = [threading.Thread(target=start_session, args=(name,)) for name in ("left", "right")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(created) == 1
    assert len(conflicts) == 1
    assert conflicts[0].existing.id == created[0]
    running = SessionStore(FileSessionBackend(tmp_path / "sessions"), is_alive=lambda pid: True).active("proj")
    assert [session.id for session in running] == created


def test_other_projects_do_not_conflict() -> None:
    store = SessionStore(MemorySessionBackend(), is_alive=lambda pid: True)
    store.create(make_session("a", project_id="one"))

    store.create(make_session("b", project_id="two"))

    assert {session.id for session in store.list_sessions()} == {"a", "b"}
    assert store.latest("two").id == "b"


def test_stale_session_is_reaped() -> None:
    backend = MemorySessionBackend()
    store = SessionStore(backend, clock=StepClock(), is_alive=lambda pid: False)
    store.save(make_session("ghost"))

    assert store.active("proj") == []
    reaped = store.get("ghost")
    assert reaped.status == "stopped"
    assert reaped.stop_reason == STALE_REASON

    created = store.create(make_session("fresh"))
    assert created.status == "running"


def test_list_sessions_newest_first_and_skips_corrupt(caplog: pytest.LogCaptureFixture) -> None:
    backend = MemorySessionBackend()
    store = SessionStore(backend)
    store.save(make_session("old", started=T0))
    store.save(make_session("new", started=T0 + timedelta(hours=1)))
    backend.documents["bad"] = "{not json"

    sessions = store.list_sessions("proj")

    assert [session.id for session in sessions] == ["new", "old"]
    assert "Skipping unreadable session record" in caplog.text


def test_get_missing_session() -> None:
    with pytest.raises(SessionNotFoundError):
        SessionStore(MemorySessionBackend()).get("nope")


def test_file_backend_roundtrip(tmp_path: Path) -> None:
    store = SessionStore(FileSessionBackend(tmp_path / "sessions"), is_alive=lambda pid: True)
    session = store.create(make_session("abc"))
    session.record_iteration()
    store.save(session)

    path = tmp_path / "sessions" / "abc.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["iteration"] == 1
    assert payload["status"] == "running"
    assert store.get("abc").iteration == 1
    assert not list((tmp_path / "sessions").glob("*.tmp"))


def test_file_backend_write_failure_is_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "sessions"
    blocker.write_text("not a directory", encoding="utf-8")
    store = SessionStore(FileSessionBackend(blocker))

    with pytest.raises(SessionPersistenceError):
        store.save(make_session("abc"))
