"""Utility helpers for child process execution."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the controller's environment minus its Python virtualenv wiring."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def truncate_middle(text: str, max_length: int) -> str:
    """Shorten ``text`` to roughly ``max_length`` characters, keeping both ends."""

    if len(text) <= max_length:
        return text
    half = max(max_length // 2 - 20, 1)
    omitted = len(text) - 2 * half
    return f"{text[:half]}\n\n... (truncated {omitted} chars) ...\n\n{text[-half:]}"


__all__ = ["sanitize_environment", "truncate_middle"]
