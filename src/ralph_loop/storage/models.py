"""Session record and its status state machine."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from ..errors import RalphError

SessionStatus = Literal["running", "paused", "stopped", "completed"]
SessionMode = Literal["plan", "build"]

ACTIVE_STATUSES: frozenset[str] = frozenset({"running", "paused"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"stopped", "completed"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "running": frozenset({"paused", "stopped", "completed"}),
    "paused": frozenset({"running", "stopped"}),
    "stopped": frozenset(),
    "completed": frozenset(),
}


class InvalidTransitionError(RalphError):
    """Raised when a status change is not allowed by the session state machine."""


def new_session_id() -> str:
    return uuid4().hex[:8]


class Session(BaseModel):
    """Durable record of one build loop execution."""

    id: str = Field(default_factory=new_session_id)
    project_id: str
    mode: SessionMode = "build"
    status: SessionStatus = "running"
    pid: int | None = Field(default=None, description="Process id of the owning controller.")
    iteration: int = Field(default=0, ge=0)
    started_at: datetime
    updated_at: datetime | None = None
    paused_at: datetime | None = None
    stopped_at: datetime | None = None
    agent: str
    model: str | None = None
    log_file: str
    task: str | None = None
    stop_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: SessionStatus, *, at: datetime, reason: str | None = None) -> None:
        """Move to ``status``, stamping the matching timestamp."""

        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"Session {self.id} cannot move from {self.status} to {status}")
        self.status = status
        if status == "paused":
            self.paused_at = at
        elif status == "running":
            self.paused_at = None
        else:
            self.stopped_at = at
            if reason is not None:
                self.stop_reason = reason

    def record_iteration(self) -> int:
        self.iteration += 1
        return self.iteration


__all__ = [
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "InvalidTransitionError",
    "Session",
    "SessionMode",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "new_session_id",
]
