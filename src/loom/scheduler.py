# scheduler.py
"""
The scheduler owns the authoritative run state.

It runs as a single asyncio task that processes a mailbox one message at a
time; every handler is synchronous, so RunState has exactly one writer and
needs no locks. Other components talk to it only through the coroutine API
below, which posts a message and awaits the reply.

Lifecycle of a job:  pending -> running -> success | failed
                     pending -> skipped    (a dependency failed)
                     pending | running -> cancelled   (stop_run)
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set, Tuple

from .dag import DependencyGraph, ReadinessTracker, build_graph
from .errors import ExecutionError, StalledRunError
from .logs import LogBroadcaster
from .model import Job, JobResult, JobState
from .runner import JobRunner

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    run_id: int = 0
    jobs: Dict[str, Job] = field(default_factory=dict)
    graph: Optional[DependencyGraph] = None
    tracker: Optional[ReadinessTracker] = None
    completed: Set[str] = field(default_factory=set)
    running: Set[str] = field(default_factory=set)
    results: Dict[str, JobResult] = field(default_factory=dict)
    stalled: bool = False
    stopped: bool = False

    @property
    def loaded(self) -> bool:
        return self.graph is not None

    def non_terminal(self) -> List[str]:
        return sorted(n for n, j in self.jobs.items() if not j.state.terminal)

    @property
    def idle(self) -> bool:
        return not self.loaded or self.stopped or self.stalled or not self.non_terminal()

    @property
    def status(self) -> str:
        if not self.loaded:
            return "idle"
        if self.stopped:
            return "cancelled"
        if self.stalled:
            return "stalled"
        if self.running:
            return "running"
        if not self.non_terminal():
            if any(j.state is not JobState.SUCCESS for j in self.jobs.values()):
                return "failed"
            return "success"
        return "pending"


_Message = Tuple[str, tuple, Optional["asyncio.Future[Any]"]]


def _fresh(job: Job) -> Job:
    return replace(job, steps=list(job.steps), needs=list(job.needs), env=dict(job.env), state=JobState.PENDING)


class Scheduler:
    """
    Args:
        runner: executes dispatched jobs
        logs: optional broadcaster whose history is cleared on every reload
    """

    def __init__(self, runner: JobRunner, *, logs: Optional[LogBroadcaster] = None):
        self.runner = runner
        self.logs = logs
        self._state = RunState()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._idle_waiters: List[asyncio.Future] = []
        self._mailbox: Optional[asyncio.Queue[_Message]] = None
        self._actor: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Actor lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._actor is not None

    async def start(self) -> None:
        if self._actor is not None:
            return
        self._mailbox = asyncio.Queue()
        self._actor = asyncio.ensure_future(self._loop())

    async def close(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        if self._actor is not None:
            self._actor.cancel()
            await asyncio.gather(self._actor, return_exceptions=True)
            self._actor = None
            self._mailbox = None

    async def __aenter__(self) -> "Scheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _loop(self) -> None:
        assert self._mailbox is not None
        while True:
            kind, args, reply = await self._mailbox.get()
            handler = getattr(self, f"_handle_{kind}")
            try:
                result = handler(*args)
            except Exception as e:
                if reply is not None and not reply.done():
                    reply.set_exception(e)
                else:
                    logger.exception("scheduler message %r failed", kind)
                continue
            if reply is not None and not reply.done():
                reply.set_result(result)

    async def _call(self, kind: str, *args: Any) -> Any:
        if self._mailbox is None:
            raise RuntimeError("Scheduler is not started")
        reply = asyncio.get_running_loop().create_future()
        await self._mailbox.put((kind, args, reply))
        return await reply

    def _post(self, kind: str, *args: Any) -> None:
        assert self._mailbox is not None
        self._mailbox.put_nowait((kind, args, None))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def load_run(self, jobs: List[Job]) -> int:
        """
        Replace the current run with `jobs`, all pending. Returns the new run id.

        Raises ValidationError / CycleError and leaves the current run untouched.
        """
        return await self._call("load_run", list(jobs))

    async def start_run(self) -> List[str]:
        """Dispatch every ready job; returns the names dispatched."""
        return await self._call("start_run")

    async def report_completion(self, name: str, result: JobResult) -> bool:
        """Record a finished job. Returns False if the report was ignored."""
        return await self._call("report_completion", name, result, None)

    async def stop_run(self) -> List[str]:
        """Cancel in-flight jobs; every non-terminal job becomes cancelled."""
        return await self._call("stop_run")

    async def get_ready_jobs(self) -> List[str]:
        return await self._call("get_ready_jobs")

    async def get_job_status(self, name: str) -> Job:
        return await self._call("get_job_status", name)

    async def get_all_jobs(self) -> List[Job]:
        return await self._call("get_all_jobs")

    async def get_results(self) -> Dict[str, JobResult]:
        return await self._call("get_results")

    async def snapshot(self) -> dict:
        return await self._call("snapshot")

    async def wait_until_idle(self, timeout: Optional[float] = None) -> dict:
        """Wait until the run is complete, stalled or stopped; returns a snapshot."""
        waiter = await self._call("watch_idle")
        await asyncio.wait_for(asyncio.shield(waiter), timeout)
        return await self.snapshot()

    # ------------------------------------------------------------------
    # Handlers (run inside the actor, never await)
    # ------------------------------------------------------------------

    def _handle_load_run(self, jobs: List[Job]) -> int:
        fresh = [_fresh(j) for j in jobs]
        graph = build_graph(fresh)

        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()

        self._state = RunState(
            run_id=self._state.run_id + 1,
            jobs={j.name: j for j in fresh},
            graph=graph,
            tracker=ReadinessTracker(graph),
        )
        if self.logs is not None:
            self.logs.clear()
        logger.info("run %d loaded with %d jobs", self._state.run_id, len(fresh))
        self._wake_idle()
        return self._state.run_id

    def _handle_start_run(self) -> List[str]:
        st = self._state
        if not st.loaded:
            logger.warning("start requested but no workflow is loaded")
            return []
        return self._dispatch()

    def _handle_report_completion(self, name: str, result: JobResult, run_id: Optional[int]) -> bool:
        st = self._state
        if run_id is not None and run_id != st.run_id:
            logger.debug("ignoring report for %s from superseded run %d", name, run_id)
            return False
        if name not in st.running:
            logger.warning("ignoring report for %s: job is not running", name)
            return False

        st.running.discard(name)
        task = self._tasks.pop(name, None)
        if run_id is None and task is not None:
            # An outside report wins over whatever the runner is still doing
            task.cancel()
        st.results[name] = result
        job = st.jobs[name]

        if result.success:
            job.state = JobState.SUCCESS
            st.completed.add(name)
            unlocked = st.tracker.complete(name)
            logger.info("✓ %s succeeded%s", name, f", unlocked {unlocked}" if unlocked else "")
        else:
            job.state = JobState.FAILED
            skipped = self._skip_dependents(name)
            logger.warning("✗ %s failed%s", name, f", skipping {skipped}" if skipped else "")

        self._dispatch()
        return True

    def _handle_stop_run(self) -> List[str]:
        st = self._state
        if not st.loaded:
            return []
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()

        cancelled = st.non_terminal()
        for n in cancelled:
            st.jobs[n].state = JobState.CANCELLED
        st.running.clear()
        st.tracker.discard(cancelled)
        st.stopped = True
        logger.info("run %d stopped, cancelled %s", st.run_id, cancelled)
        self._wake_idle()
        return cancelled

    def _handle_get_ready_jobs(self) -> List[str]:
        st = self._state
        if not st.loaded or st.stopped:
            return []
        return [n for n in st.tracker.ready() if st.jobs[n].state is JobState.PENDING]

    def _handle_get_job_status(self, name: str) -> Job:
        job = self._state.jobs.get(name)
        if job is None:
            raise KeyError(name)
        return replace(job)

    def _handle_get_all_jobs(self) -> List[Job]:
        return [replace(j) for j in self._state.jobs.values()]

    def _handle_get_results(self) -> Dict[str, JobResult]:
        return dict(self._state.results)

    def _handle_snapshot(self) -> dict:
        st = self._state
        return {
            "run_id": st.run_id,
            "status": st.status,
            "running": sorted(st.running),
            "completed": sorted(st.completed),
            "jobs": [j.to_dict() for j in st.jobs.values()],
        }

    def _handle_watch_idle(self) -> asyncio.Future:
        waiter = asyncio.get_running_loop().create_future()
        if self._state.idle:
            waiter.set_result(None)
        else:
            self._idle_waiters.append(waiter)
        return waiter

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _dispatch(self) -> List[str]:
        st = self._state
        if st.stopped:
            return []

        dispatched: List[str] = []
        for name in st.tracker.ready():
            job = st.jobs[name]
            st.tracker.take(name)
            if job.state is not JobState.PENDING:
                continue
            job.state = JobState.RUNNING
            st.running.add(name)
            self._tasks[name] = asyncio.ensure_future(self._execute(st.run_id, replace(job)))
            dispatched.append(name)

        if dispatched:
            logger.info("dispatched %s", dispatched)
        elif not st.running:
            self._finish()
        return dispatched

    def _skip_dependents(self, name: str) -> List[str]:
        """Mark every pending job downstream of failed `name` as skipped."""
        st = self._state
        skipped = [
            n for n in sorted(st.tracker.unreachable_from(name))
            if st.jobs[n].state is JobState.PENDING
        ]
        for n in skipped:
            st.jobs[n].state = JobState.SKIPPED
        st.tracker.discard(skipped)
        return skipped

    def _finish(self) -> None:
        st = self._state
        pending = st.non_terminal()
        if pending:
            st.stalled = True
            logger.error("%s", StalledRunError(pending))
        else:
            logger.info("run %d complete: %s", st.run_id, st.status)
        self._wake_idle()

    def _wake_idle(self) -> None:
        if not self._state.idle:
            return
        waiters, self._idle_waiters = self._idle_waiters, []
        for w in waiters:
            if not w.done():
                w.set_result(None)

    async def _execute(self, run_id: int, job: Job) -> None:
        try:
            result = await self.runner.run_job(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("job %s crashed", job.name)
            result = JobResult(job=job.name, error=str(ExecutionError(str(e) or type(e).__name__, job=job.name)))
        self._post("report_completion", job.name, result, run_id)
