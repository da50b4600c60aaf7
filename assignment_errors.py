"""Exceptions raised by the assignment engine and its solver chain."""

from __future__ import annotations


class AssignmentError(Exception):
    """Base class for engine failures."""


class ConfigurationError(AssignmentError, ValueError):
    """Fatal for the run; raised before any priority tier executes."""


class LPBuildError(AssignmentError):
    """The LP model violates a structural invariant (objective, coefficients)."""


class SolverError(AssignmentError):
    def __init__(self, message: str, *, backend: str = ""):
        super().__init__(message)
        self.backend = backend


class SolverResourceError(SolverError):
    """Memory/abort/oversize failures; the router escalates to the next backend."""


class SolverTransientError(SolverError):
    """Remote service unreachable or timed out; retried once."""


class SolverCancelled(SolverError):
    pass


ERROR_CATEGORIES = ("timeout", "memory", "infeasible", "network", "parse", "unknown")


def classify_error(message: str | None) -> str:
    text = (message or "").lower()
    if not text:
        return "unknown"
    if "timeout" in text or "timed out" in text or "time limit" in text:
        return "timeout"
    if "memory" in text or "oom" in text or "abort" in text:
        return "memory"
    if "infeasible" in text:
        return "infeasible"
    if "network" in text or "fetch" in text or "connection" in text or "unreachable" in text:
        return "network"
    if "parse" in text or "json" in text or "syntax" in text:
        return "parse"
    return "unknown"
