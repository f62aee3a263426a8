"""Storage abstractions for session records."""

from .models import InvalidTransitionError, Session, SessionMode, SessionStatus
from .store import (
    FileSessionBackend,
    MemorySessionBackend,
    SessionBackend,
    SessionConflictError,
    SessionNotFoundError,
    SessionPersistenceError,
    SessionStore,
)

__all__ = [
    "FileSessionBackend",
    "InvalidTransitionError",
    "MemorySessionBackend",
    "Session",
    "SessionBackend",
    "SessionConflictError",
    "SessionMode",
    "SessionNotFoundError",
    "SessionPersistenceError",
    "SessionStatus",
    "SessionStore",
]
