"""Supervised build loop driving a coding agent through plan, verify and retry cycles."""

__version__ = "0.1.0"

__all__ = ["__version__"]
