# runner.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from .executor import ContainerExecutor, resolve_image
from .model import Job, JobResult, StepOptions

logger = logging.getLogger(__name__)


class JobRunner:
    """
    Executes the steps of one job strictly in order.

    Args:
        executor: runs each step (ContainerExecutor or HostExecutor)
        workspace: host directory mounted into every step
        working_dir: mount point / cwd inside the container
        stop_on_failure: stop at the first failed step (remaining steps are
            reported in JobResult.skipped_steps); when False every step runs
        env: base environment for every step; job env overrides it
    """

    def __init__(
        self,
        executor: ContainerExecutor,
        workspace: str | Path = ".",
        *,
        working_dir: str = "/workspace",
        stop_on_failure: bool = True,
        env: Optional[Dict[str, str]] = None,
    ):
        self.executor = executor
        self.workspace = str(Path(workspace).resolve())
        self.working_dir = working_dir
        self.stop_on_failure = stop_on_failure
        self.env = dict(env or {})

    def options_for(self, job: Job) -> StepOptions:
        env = dict(self.env)
        env.update(job.env)
        return StepOptions(
            image=resolve_image(job.runs_on),
            workspace=self.workspace,
            working_dir=self.working_dir,
            env=env,
        )

    async def run_job(self, job: Job) -> JobResult:
        logger.info("[%s] job started (%d steps, image=%s)", job.name, len(job.steps), resolve_image(job.runs_on))
        options = self.options_for(job)
        result = JobResult(job=job.name)

        for idx, step in enumerate(job.steps):
            logger.info("[%s] ▶ %s", job.name, step.name)
            step_result = await self.executor.run_step(job.name, step, options)
            result.steps.append(step_result)

            if step_result.ok:
                logger.info("[%s] ✓ %s", job.name, step.name)
                continue

            logger.warning(
                "[%s] ✗ %s (exit=%s)%s",
                job.name,
                step.name,
                step_result.exit_code,
                f": {step_result.error}" if step_result.error else "",
            )
            if self.stop_on_failure:
                result.skipped_steps = [s.name for s in job.steps[idx + 1:]]
                break

        logger.info("[%s] job %s", job.name, "succeeded" if result.success else "failed")
        return result
