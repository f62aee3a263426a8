"""Agent definitions, registry, output classification and the per-iteration driver."""

from .driver import AgentDriver
from .markers import (
    AgentOutcome,
    Blocked,
    DONE_MARKER,
    Done,
    Failed,
    FailureCause,
    classify_output,
    describe,
)
from .models import AgentDefinition, AgentInvocation
from .registry import (
    AgentNotFoundError,
    AgentProfileLoadError,
    AgentRegistry,
    UnknownAgentError,
)

__all__ = [
    "AgentDefinition",
    "AgentDriver",
    "AgentInvocation",
    "AgentNotFoundError",
    "AgentOutcome",
    "AgentProfileLoadError",
    "AgentRegistry",
    "Blocked",
    "DONE_MARKER",
    "Done",
    "Failed",
    "FailureCause",
    "UnknownAgentError",
    "classify_output",
    "describe",
]
