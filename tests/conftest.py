"""Shared fixtures: job builders and a controllable fake JobRunner."""
from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List

import pytest

from loom.model import Job, JobResult, Step, StepResult


def make_job(name: str, needs: Iterable[str] = (), steps: int = 1, runs_on: str = "ubuntu-latest") -> Job:
    return Job(
        name=name,
        steps=[Step(name=f"{name}-{i}", run=f"echo {name} {i}") for i in range(steps)],
        needs=list(needs),
        runs_on=runs_on,
    )


@pytest.fixture
def diamond() -> List[Job]:
    """build -> {test, lint} -> deploy"""
    return [
        make_job("build"),
        make_job("test", needs=["build"]),
        make_job("lint", needs=["build"]),
        make_job("deploy", needs=["test", "lint"]),
    ]


class FakeRunner:
    """
    Stands in for JobRunner. Jobs named in `failing` exit 1.
    With gated=True each job blocks until `release(name)` is called.
    """

    def __init__(self, failing: Iterable[str] = (), gated: bool = False, crashing: Iterable[str] = ()):
        self.failing = set(failing)
        self.crashing = set(crashing)
        self.gated = gated
        self.started: List[str] = []
        self._gates: Dict[str, asyncio.Event] = {}

    def _gate(self, name: str) -> asyncio.Event:
        return self._gates.setdefault(name, asyncio.Event())

    def release(self, name: str) -> None:
        self._gate(name).set()

    async def run_job(self, job: Job) -> JobResult:
        self.started.append(job.name)
        if self.gated:
            await self._gate(job.name).wait()
        if job.name in self.crashing:
            raise RuntimeError(f"runner blew up on {job.name}")
        code = 1 if job.name in self.failing else 0
        return JobResult(job=job.name, steps=[StepResult(step=s.name, exit_code=code) for s in job.steps])


async def eventually(predicate, timeout: float = 3.0) -> None:
    """Poll an async predicate until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
