import asyncio

import pytest

from loom.errors import CycleError, ValidationError
from loom.model import JobResult, JobState, StepResult
from loom.scheduler import Scheduler

from conftest import FakeRunner, eventually, make_job


async def _states(scheduler):
    return {j.name: j.state for j in await scheduler.get_all_jobs()}


def test_full_run_respects_dependencies(diamond):
    runner = FakeRunner()

    async def main():
        async with Scheduler(runner) as scheduler:
            await scheduler.load_run(diamond)
            await scheduler.start_run()
            return await scheduler.wait_until_idle(timeout=5)

    snapshot = asyncio.run(main())

    assert snapshot["status"] == "success"
    assert {j["state"] for j in snapshot["jobs"]} == {"success"}
    assert runner.started[0] == "build"
    assert set(runner.started[1:3]) == {"test", "lint"}
    assert runner.started[3] == "deploy"
    assert len(runner.started) == 4


def test_step_by_step_readiness(diamond):
    runner = FakeRunner(gated=True)

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(diamond)
            assert await s.get_ready_jobs() == ["build"]
            assert await s.start_run() == ["build"]
            assert (await s.get_job_status("build")).state is JobState.RUNNING
            assert await s.get_ready_jobs() == []

            runner.release("build")

            async def test_and_lint_running():
                st = await _states(s)
                return st["test"] is JobState.RUNNING and st["lint"] is JobState.RUNNING
            await eventually(test_and_lint_running)
            assert (await s.get_job_status("build")).state is JobState.SUCCESS

            runner.release("test")

            async def test_done():
                return (await s.get_job_status("test")).state is JobState.SUCCESS
            await eventually(test_done)
            # deploy is still blocked on lint
            assert (await s.get_job_status("deploy")).state is JobState.PENDING
            assert await s.get_ready_jobs() == []

            runner.release("lint")

            async def deploy_running():
                return (await s.get_job_status("deploy")).state is JobState.RUNNING
            await eventually(deploy_running)

            runner.release("deploy")
            snapshot = await s.wait_until_idle(timeout=5)
            assert snapshot["status"] == "success"
            assert await s.get_ready_jobs() == []

    asyncio.run(main())


def test_independent_jobs_overlap():
    jobs = [make_job("a"), make_job("b"), make_job("c", needs=["a", "b"])]
    runner = FakeRunner(gated=True)

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(jobs)
            assert await s.start_run() == ["a", "b"]
            st = await _states(s)
            assert st["a"] is JobState.RUNNING and st["b"] is JobState.RUNNING
            for name in "abc":
                runner.release(name)
            return await s.wait_until_idle(timeout=5)

    assert asyncio.run(main())["status"] == "success"


def test_failed_job_skips_its_dependents(diamond):
    runner = FakeRunner(failing={"lint"})

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(diamond)
            await s.start_run()
            snapshot = await s.wait_until_idle(timeout=5)
            return snapshot, await _states(s), await s.get_results()

    snapshot, states, results = asyncio.run(main())

    assert snapshot["status"] == "failed"
    assert states == {
        "build": JobState.SUCCESS,
        "test": JobState.SUCCESS,
        "lint": JobState.FAILED,
        "deploy": JobState.SKIPPED,
    }
    assert results["lint"].success is False
    assert results["lint"].steps[0].exit_code == 1
    assert "deploy" not in runner.started
    assert "lint" not in snapshot["completed"]


def test_failure_does_not_affect_siblings():
    jobs = [make_job("a"), make_job("b"), make_job("after-a", needs=["a"]), make_job("after-b", needs=["b"])]
    runner = FakeRunner(failing={"a"})

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(jobs)
            await s.start_run()
            await s.wait_until_idle(timeout=5)
            return await _states(s)

    states = asyncio.run(main())
    assert states["after-a"] is JobState.SKIPPED
    assert states["after-b"] is JobState.SUCCESS


def test_runner_crash_fails_the_job(diamond):
    runner = FakeRunner(crashing={"build"})

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(diamond)
            await s.start_run()
            await s.wait_until_idle(timeout=5)
            return await _states(s), await s.get_results()

    states, results = asyncio.run(main())
    assert states["build"] is JobState.FAILED
    assert "runner blew up" in results["build"].error
    assert states["deploy"] is JobState.SKIPPED


def test_cycle_is_rejected_and_nothing_runs():
    runner = FakeRunner()

    async def main():
        async with Scheduler(runner) as s:
            with pytest.raises(CycleError):
                await s.load_run([make_job("a", needs=["b"]), make_job("b", needs=["a"])])
            assert await s.start_run() == []
            return await s.snapshot()

    snapshot = asyncio.run(main())
    assert snapshot["status"] == "idle"
    assert snapshot["jobs"] == []
    assert runner.started == []


def test_invalid_reload_keeps_previous_run(diamond):
    runner = FakeRunner(gated=True)

    async def main():
        async with Scheduler(runner) as s:
            run_id = await s.load_run(diamond)
            await s.start_run()
            with pytest.raises(ValidationError):
                await s.load_run([make_job("x", needs=["missing"])])
            snapshot = await s.snapshot()
            assert snapshot["run_id"] == run_id
            assert [j["name"] for j in snapshot["jobs"]] == ["build", "test", "lint", "deploy"]
            assert (await s.get_job_status("build")).state is JobState.RUNNING

            runner.release("build")
            for name in ("test", "lint", "deploy"):
                runner.release(name)
            return await s.wait_until_idle(timeout=5)

    assert asyncio.run(main())["status"] == "success"


def test_reloading_same_jobs_resets_state(diamond):
    async def main():
        async with Scheduler(FakeRunner()) as s:
            first = await s.load_run(diamond)
            ready_first = await s.get_ready_jobs()
            await s.start_run()
            await s.wait_until_idle(timeout=5)

            second = await s.load_run(diamond)
            states = await _states(s)
            return first, second, ready_first, await s.get_ready_jobs(), states

    first, second, ready_first, ready_second, states = asyncio.run(main())
    assert second == first + 1
    assert ready_first == ready_second == ["build"]
    assert set(states.values()) == {JobState.PENDING}


def test_loaded_jobs_are_copies(diamond):
    async def main():
        async with Scheduler(FakeRunner()) as s:
            await s.load_run(diamond)
            await s.start_run()
            await s.wait_until_idle(timeout=5)

    asyncio.run(main())
    assert {j.state for j in diamond} == {JobState.PENDING}


def test_queries_are_idempotent(diamond):
    async def main():
        async with Scheduler(FakeRunner(gated=True)) as s:
            await s.load_run(diamond)
            await s.start_run()
            return (
                [await s.get_ready_jobs() for _ in range(3)],
                [await s.get_job_status("build") for _ in range(3)],
                [await s.get_job_status("deploy") for _ in range(3)],
            )

    ready, build, deploy = asyncio.run(main())
    assert ready[0] == ready[1] == ready[2]
    assert build[0] == build[1] == build[2]
    assert deploy[0] == deploy[1] == deploy[2]


def test_unknown_job_status_raises_key_error(diamond):
    async def main():
        async with Scheduler(FakeRunner()) as s:
            await s.load_run(diamond)
            with pytest.raises(KeyError):
                await s.get_job_status("nope")

    asyncio.run(main())


def test_report_for_job_that_is_not_running_is_ignored(diamond):
    runner = FakeRunner(gated=True)
    ok = JobResult(job="deploy", steps=[StepResult(step="deploy-0", exit_code=0)])

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(diamond)
            await s.start_run()
            accepted = await s.report_completion("deploy", ok)
            return accepted, await _states(s)

    accepted, states = asyncio.run(main())
    assert accepted is False
    assert states["deploy"] is JobState.PENDING


def test_external_report_completes_running_job(diamond):
    runner = FakeRunner(gated=True)
    ok = JobResult(job="build", steps=[StepResult(step="build-0", exit_code=0)])

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(diamond)
            await s.start_run()
            assert await s.report_completion("build", ok) is True
            # a second report for the same job must not complete it twice
            assert await s.report_completion("build", ok) is False
            return await _states(s)

    states = asyncio.run(main())
    assert states["build"] is JobState.SUCCESS
    assert states["test"] is JobState.RUNNING
    assert states["lint"] is JobState.RUNNING


def test_stop_cancels_everything(diamond):
    runner = FakeRunner(gated=True)

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(diamond)
            await s.start_run()
            cancelled = await s.stop_run()
            snapshot = await s.wait_until_idle(timeout=1)
            assert await s.start_run() == []
            return cancelled, snapshot, await _states(s)

    cancelled, snapshot, states = asyncio.run(main())
    assert cancelled == ["build", "deploy", "lint", "test"]
    assert snapshot["status"] == "cancelled"
    assert set(states.values()) == {JobState.CANCELLED}


def test_reload_supersedes_running_jobs(diamond):
    runner = FakeRunner(gated=True)

    async def main():
        async with Scheduler(runner) as s:
            await s.load_run(diamond)
            await s.start_run()
            await s.load_run([make_job("solo")])
            runner.release("build")
            await s.start_run()
            runner.release("solo")
            snapshot = await s.wait_until_idle(timeout=5)
            return snapshot

    snapshot = asyncio.run(main())
    assert [j["name"] for j in snapshot["jobs"]] == ["solo"]
    assert snapshot["status"] == "success"
    assert snapshot["completed"] == ["solo"]


def test_api_requires_started_scheduler(diamond):
    scheduler = Scheduler(FakeRunner())

    async def main():
        with pytest.raises(RuntimeError):
            await scheduler.load_run(diamond)

    asyncio.run(main())


class NoSkipScheduler(Scheduler):
    """Leaves dependents of a failed job pending, so the run cannot progress."""

    def _skip_dependents(self, name):
        return []


def test_run_with_unreachable_pending_jobs_is_stalled(diamond, caplog):
    runner = FakeRunner(failing={"build"})

    async def main():
        async with NoSkipScheduler(runner) as s:
            await s.load_run(diamond)
            await s.start_run()
            snapshot = await s.wait_until_idle(timeout=5)
            return snapshot, await _states(s), await s.get_ready_jobs()

    with caplog.at_level("ERROR", logger="loom.scheduler"):
        snapshot, states, ready = asyncio.run(main())

    assert snapshot["status"] == "stalled"
    assert snapshot["running"] == []
    assert states["build"] is JobState.FAILED
    assert {states[n] for n in ("test", "lint", "deploy")} == {JobState.PENDING}
    assert ready == []
    assert runner.started == ["build"]
    assert "Run stalled" in caplog.text
    assert "['deploy', 'lint', 'test']" in caplog.text
