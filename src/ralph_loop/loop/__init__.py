"""The build loop: prompt composition and the iteration controller."""

from .controller import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_OK,
    BuildLoopController,
    LoopResult,
    RetryBudget,
)
from .prompts import FailureContext, compose_build_prompt, compose_plan_prompt

__all__ = [
    "BuildLoopController",
    "EXIT_FAILURE",
    "EXIT_INTERRUPTED",
    "EXIT_OK",
    "FailureContext",
    "LoopResult",
    "RetryBudget",
    "compose_build_prompt",
    "compose_plan_prompt",
]
