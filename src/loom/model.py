# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


DEFAULT_RUNS_ON = "ubuntu-latest"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Lifecycle of a job inside one run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobState.PENDING, JobState.RUNNING)


@dataclass(frozen=True)
class Step:
    """A single shell command (step) inside a job."""
    name: str
    run: str


@dataclass
class Job:
    """
    A workflow job: ordered steps + dependencies + execution environment.

    `needs` names the jobs that must succeed before this one runs.
    `runs_on` is either a friendly runtime tag ("node-18") or an image name.
    `state` is owned by the scheduler; everything else is fixed once loaded.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    runs_on: str = DEFAULT_RUNS_ON
    env: Dict[str, str] = field(default_factory=dict)
    state: JobState = JobState.PENDING

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "needs": list(self.needs),
            "runs_on": self.runs_on,
            "steps": [{"name": s.name, "run": s.run} for s in self.steps],
        }


@dataclass(frozen=True)
class StepOptions:
    """How to run one step: which image, what to mount, where, with which env."""
    image: str
    workspace: str
    working_dir: str = "/workspace"
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LogEvent:
    """
    One line of step output.

    stdout and stderr are read from separate pipes and tagged with `stream`.
    `seq` is assigned in arrival order across both streams of a step.
    """
    job: str
    step: str
    stream: str
    line: str
    seq: int
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "step": self.step,
            "stream": self.stream,
            "line": self.line,
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StepResult:
    step: str
    exit_code: int
    lines: List[str] = field(default_factory=list)
    finished_at: datetime = field(default_factory=utcnow)
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class JobResult:
    """Step results of one job run. Success means every executed step exited 0."""
    job: str
    steps: List[StepResult] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        if self.error is not None or not self.steps:
            return False
        return all(s.ok for s in self.steps)

    @property
    def failed_step(self) -> Optional[StepResult]:
        for s in self.steps:
            if not s.ok:
                return s
        return None
