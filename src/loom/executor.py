# executor.py
from __future__ import annotations

import asyncio
import itertools
import logging
import os
import re
import signal
import uuid
from typing import Dict, List, Optional, Protocol

from .errors import ExecutionError
from .model import LogEvent, Step, StepOptions, StepResult

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "ubuntu:latest"

# Friendly `runs-on` tags -> concrete images. Anything else is used as-is.
IMAGES: Dict[str, str] = {
    "ubuntu-latest": "ubuntu:latest",
    "ubuntu-20.04": "ubuntu:20.04",
    "ubuntu-22.04": "ubuntu:22.04",
    "node": "node:18",
    "node-16": "node:16",
    "node-18": "node:18",
    "node-20": "node:20",
    "node-22": "node:22",
    "python": "python:3.11",
    "python-3.9": "python:3.9",
    "python-3.10": "python:3.10",
    "python-3.11": "python:3.11",
    "python-3.12": "python:3.12",
    "golang": "golang:1.22",
    "go": "golang:1.22",
    "go-1.21": "golang:1.21",
    "go-1.22": "golang:1.22",
    "go-1.23": "golang:1.23",
    "java": "openjdk:17",
    "java-11": "openjdk:11",
    "java-17": "openjdk:17",
    "java-21": "openjdk:21",
    "php": "php:8.2",
    "php-8.1": "php:8.1",
    "php-8.2": "php:8.2",
    "php-8.3": "php:8.3",
    "ruby": "ruby:3.2",
    "ruby-3.1": "ruby:3.1",
    "ruby-3.2": "ruby:3.2",
    "ruby-3.3": "ruby:3.3",
    "rust": "rust:1.75",
    "dotnet": "mcr.microsoft.com/dotnet/sdk:8.0",
    "dotnet-6": "mcr.microsoft.com/dotnet/sdk:6.0",
    "dotnet-7": "mcr.microsoft.com/dotnet/sdk:7.0",
    "dotnet-8": "mcr.microsoft.com/dotnet/sdk:8.0",
}

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127

# Lines longer than this are split into several LogEvents
MAX_LINE = 1024 * 1024
READ_CHUNK = 64 * 1024
DRAIN_GRACE = 5.0


def resolve_image(runs_on: str | None) -> str:
    if not runs_on:
        return DEFAULT_IMAGE
    return IMAGES.get(runs_on, runs_on)


class LogSink(Protocol):
    def publish(self, event: LogEvent) -> None: ...


def _container_name(job: str, step: str) -> str:
    raw = f"loom-{job}-{step}"
    safe = re.sub(r"[^a-zA-Z0-9_.-]+", "-", raw).strip("-.")[:48]
    return f"{safe}-{uuid.uuid4().hex[:8]}"


class ContainerExecutor:
    """
    Runs one step inside a disposable Docker container.

    The workspace is bind-mounted read-write at the working directory and the
    step command runs through `bash -c`. The container is removed on exit
    (`--rm`). stdout and stderr are drained line by line as they arrive,
    forwarded to `sink` and retained for the StepResult.

    Args:
        runtime: container CLI executable (docker-compatible)
        sink: receives every LogEvent (e.g. a LogBroadcaster)
        timeout: per-step timeout in seconds; None disables it
        shell: shell used inside the container
    """

    def __init__(
        self,
        runtime: str = "docker",
        sink: Optional[LogSink] = None,
        timeout: Optional[float] = None,
        shell: str = "bash",
    ):
        self.runtime = runtime
        self.sink = sink
        self.timeout = timeout
        self.shell = shell

    # ------------------------------------------------------------------
    # Process construction
    # ------------------------------------------------------------------

    def build_command(self, step: Step, options: StepOptions, name: str) -> List[str]:
        workspace = os.path.abspath(options.workspace)
        cmd = [self.runtime, "run", "--rm", "--name", name]
        cmd.extend(["-v", f"{workspace}:{options.working_dir}"])
        cmd.extend(["-w", options.working_dir])
        for key, value in options.env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(options.image)
        cmd.extend([self.shell, "-c", step.run])
        return cmd

    async def _spawn(self, argv: List[str], options: StepOptions) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _terminate(self, proc: asyncio.subprocess.Process, name: str) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        # Killing the client does not stop the container
        try:
            rm = await asyncio.create_subprocess_exec(
                self.runtime, "rm", "-f", name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await rm.wait()
        except OSError as e:
            logger.warning("could not remove container %s: %s", name, e)
        await proc.wait()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_step(self, job: str, step: Step, options: StepOptions) -> StepResult:
        name = _container_name(job, step.name)
        argv = self.build_command(step, options, name)
        logger.debug("[%s] %s: %s", job, step.name, argv)

        try:
            proc = await self._spawn(argv, options)
        except OSError as e:
            err = ExecutionError(f"Could not start '{argv[0]}': {e}", job=job, step=step.name)
            logger.error("%s", err)
            return StepResult(step=step.name, exit_code=EXIT_NOT_FOUND, error=str(err))

        seq = itertools.count()
        lines: List[str] = []

        def emit(raw: bytes, stream: str) -> None:
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            lines.append(line)
            if self.sink is not None:
                self.sink.publish(LogEvent(job=job, step=step.name, stream=stream, line=line, seq=next(seq)))

        async def drain(reader: asyncio.StreamReader, stream: str) -> None:
            # Keep reading until EOF no matter how long a line gets, or the
            # child blocks on a full pipe and never exits.
            pending = b""
            while True:
                chunk = await reader.read(READ_CHUNK)
                if not chunk:
                    break
                *complete, pending = (pending + chunk).split(b"\n")
                for raw in complete:
                    emit(raw, stream)
                while len(pending) >= MAX_LINE:
                    emit(pending[:MAX_LINE], stream)
                    pending = pending[MAX_LINE:]
            if pending:
                emit(pending, stream)

        drains = [
            asyncio.ensure_future(drain(proc.stdout, "stdout")),
            asyncio.ensure_future(drain(proc.stderr, "stderr")),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), self.timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("[%s] step '%s' timed out after %ss", job, step.name, self.timeout)
            await self._terminate(proc, name)
        except asyncio.CancelledError:
            logger.info("[%s] step '%s' cancelled", job, step.name)
            for d in drains:
                d.cancel()
            await self._terminate(proc, name)
            raise

        _done, pending = await asyncio.wait(drains, timeout=DRAIN_GRACE)
        for d in pending:
            d.cancel()

        exit_code = EXIT_TIMEOUT if timed_out else proc.returncode
        result = StepResult(step=step.name, exit_code=exit_code, lines=lines, timed_out=timed_out)
        if timed_out:
            result.error = str(ExecutionError(f"Step timed out after {self.timeout}s", job=job, step=step.name))
        return result


class HostExecutor(ContainerExecutor):
    """
    Runs steps directly on the host with `sh -c`, in the workspace directory.

    No isolation at all; meant for machines without a container runtime.
    The job's `runs_on` image is ignored.
    """

    def __init__(self, sink: Optional[LogSink] = None, timeout: Optional[float] = None, shell: str = "sh"):
        super().__init__(runtime=shell, sink=sink, timeout=timeout, shell=shell)

    def build_command(self, step: Step, options: StepOptions, name: str) -> List[str]:
        return [self.shell, "-c", step.run]

    async def _spawn(self, argv: List[str], options: StepOptions) -> asyncio.subprocess.Process:
        env = os.environ.copy()
        env.update(options.env)
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=os.path.abspath(options.workspace),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

    async def _terminate(self, proc: asyncio.subprocess.Process, name: str) -> None:
        if proc.returncode is None:
            # The whole process group, so grandchildren release the pipes too
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        await proc.wait()
