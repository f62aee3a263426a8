"""Quality gate execution."""

from .runner import ALL_GATES_PASSED, Gate, GateResult, GateRunner, parse_gates

__all__ = ["ALL_GATES_PASSED", "Gate", "GateResult", "GateRunner", "parse_gates"]
