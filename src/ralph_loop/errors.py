"""Exception types shared across the build loop."""

from __future__ import annotations


class RalphError(RuntimeError):
    """Base class for build loop errors."""


class ConfigError(RalphError):
    """Raised when project or runtime configuration is missing or invalid.

    Configuration errors are fatal before any session is created.
    """


class NoTaskError(RalphError):
    """Raised when the plan document has no task in progress."""


__all__ = ["ConfigError", "NoTaskError", "RalphError"]
