# errors.py
from __future__ import annotations

from typing import Iterable, Optional


class LoomError(Exception):
    """
    Base error with enough context for clean CLI output and API responses:
    a human-readable message plus the offending job/step when known.
    """

    def __init__(self, message: str, *, job: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step

    def __str__(self) -> str:
        lines = [self.message]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        return "\n".join(lines)


class ValidationError(LoomError):
    """The workflow definition failed structural checks."""


class CycleError(LoomError):
    """The dependency graph is not acyclic."""

    def __init__(self, jobs: Iterable[str]):
        self.jobs = sorted(jobs)
        super().__init__(f"Circular dependency detected between jobs: {self.jobs}")


class ExecutionError(LoomError):
    """A step could not be executed (runtime unreachable, spawn failure, crash)."""


class StalledRunError(LoomError):
    """Nothing is ready or running, yet some jobs never reached a terminal state."""

    def __init__(self, pending: Iterable[str]):
        self.pending = sorted(pending)
        super().__init__(f"Run stalled: no job is ready but {self.pending} never finished")
