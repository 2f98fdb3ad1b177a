# cli.py
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from .config import load_file
from .dag import build_graph
from .errors import LoomError
from .executor import ContainerExecutor, HostExecutor
from .logs import LogBroadcaster, Subscription
from .runner import JobRunner
from .scheduler import Scheduler
from .settings import Settings
from .ui.console import Console, get_console, set_console
from .watcher import Watcher


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )


def build_executor(runtime: str, logs: LogBroadcaster, timeout: Optional[float]) -> ContainerExecutor:
    if runtime == "host":
        return HostExecutor(sink=logs, timeout=timeout)
    return ContainerExecutor(runtime=runtime, sink=logs, timeout=timeout)


def build_scheduler(settings: Settings, logs: LogBroadcaster) -> Scheduler:
    executor = build_executor(settings.runtime, logs, settings.step_timeout)
    runner = JobRunner(executor, settings.workspace, stop_on_failure=settings.stop_on_failure)
    return Scheduler(runner, logs=logs)


async def _print_logs(sub: Subscription, console: Console) -> None:
    async for event in sub:
        console.print_log(event)


def _load_or_exit(config_path: str):
    console = get_console()
    try:
        jobs = load_file(config_path)
        build_graph(jobs)
    except FileNotFoundError as e:
        console.print_error(
            "Workflow file not found",
            str(e),
            suggestion="Create a .loom.yml or point to one:\n  loom run --config path/to/workflow.loom.yml",
        )
        sys.exit(1)
    except LoomError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    return jobs


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--log-level", default=None, help="Logging verbosity (defaults to LOOM_LOG_LEVEL or INFO)")
@click.pass_context
def cli(ctx, debug, log_level):
    """Loom: local workflow runner with containerized steps."""
    settings = Settings.from_env()
    set_console(Console(debug=debug))
    configure_logging("DEBUG" if debug else (log_level or settings.log_level))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


def _engine_options(f):
    f = click.option("--config", "config_path", default=None, help="Workflow file (defaults to LOOM_CONFIG or .loom.yml)")(f)
    f = click.option("--workspace", default=None, help="Directory mounted into every step")(f)
    f = click.option("--runtime", default=None, help="'docker' (or another docker-compatible CLI) or 'host'")(f)
    f = click.option("--timeout", default=None, type=float, help="Per-step timeout in seconds")(f)
    f = click.option(
        "--stop-on-failure/--no-stop-on-failure",
        default=None,
        help="Stop a job at its first failed step",
    )(f)
    return f


def _settings_from(ctx, config_path, workspace, runtime, timeout, stop_on_failure) -> Settings:
    base: Settings = ctx.obj["settings"]
    return Settings(
        workspace=workspace or base.workspace,
        config_path=config_path or base.config_path,
        log_level=base.log_level,
        runtime=runtime or base.runtime,
        step_timeout=timeout if timeout is not None else base.step_timeout,
        poll_interval=base.poll_interval,
        stop_on_failure=base.stop_on_failure if stop_on_failure is None else stop_on_failure,
        host=base.host,
        port=base.port,
    )


async def _run(settings: Settings, jobs, watch: bool):
    console = get_console()
    logs = LogBroadcaster()
    with logs.subscribe() as sub:
        printer = asyncio.ensure_future(_print_logs(sub, console))
        try:
            async with build_scheduler(settings, logs) as scheduler:
                if watch:
                    # Runs until interrupted; each change restarts the run
                    watcher = Watcher(scheduler, settings.config_path, poll_interval=settings.poll_interval)
                    await watcher.run(initial=True)

                await scheduler.load_run(jobs)
                await scheduler.start_run()
                snapshot = await scheduler.wait_until_idle()
                return snapshot, await scheduler.get_all_jobs(), await scheduler.get_results()
        finally:
            printer.cancel()
            while not sub.queue.empty():
                console.print_log(sub.queue.get_nowait())


@cli.command()
@_engine_options
@click.option("--watch/--no-watch", default=False, help="Re-run whenever the workflow file changes")
@click.pass_context
def run(ctx, config_path, workspace, runtime, timeout, stop_on_failure, watch):
    """Run a workflow to completion."""
    console = get_console()
    settings = _settings_from(ctx, config_path, workspace, runtime, timeout, stop_on_failure)
    jobs = _load_or_exit(settings.config_path)

    console.print_run_started(
        workflow=Path(settings.config_path).name,
        workspace=str(Path(settings.workspace).resolve()),
        job_count=len(jobs),
    )

    try:
        snapshot, final_jobs, results = asyncio.run(_run(settings, jobs, watch))
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(final_jobs, results)
    if snapshot["status"] == "stalled":
        console.print_error("Run stalled", "Some jobs could never become ready.")
    if snapshot["status"] != "success":
        sys.exit(1)


@cli.command()
@_engine_options
@click.option("--host", default=None, help="Bind address (defaults to LOOM_HOST)")
@click.option("--port", default=None, type=int, help="Port (defaults to LOOM_PORT)")
@click.pass_context
def serve(ctx, config_path, workspace, runtime, timeout, stop_on_failure, host, port):
    """Watch the workflow file and serve the status API."""
    import uvicorn
    from .api import create_app

    console = get_console()
    settings = _settings_from(ctx, config_path, workspace, runtime, timeout, stop_on_failure)

    async def main() -> None:
        logs = LogBroadcaster()
        scheduler = build_scheduler(settings, logs)
        await scheduler.start()
        watcher = Watcher(scheduler, settings.config_path, poll_interval=settings.poll_interval)
        app = create_app(scheduler, logs, watcher)
        server = uvicorn.Server(
            uvicorn.Config(app, host=host or settings.host, port=port or settings.port, log_level=settings.log_level.lower())
        )
        watching = asyncio.ensure_future(watcher.run(initial=True))
        try:
            await server.serve()
        finally:
            watching.cancel()
            await scheduler.close()

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print_info("\nStopped by user")


@cli.command()
@click.option("--config", "config_path", default=None, help="Workflow file (defaults to LOOM_CONFIG or .loom.yml)")
@click.pass_context
def validate(ctx, config_path):
    """Check a workflow file without running it."""
    path = config_path or ctx.obj["settings"].config_path
    jobs = _load_or_exit(path)
    get_console().print_info(f"{path}: OK ({len(jobs)} jobs)")


@cli.command()
@click.option("--config", "config_path", default=None, help="Workflow file (defaults to LOOM_CONFIG or .loom.yml)")
@click.pass_context
def plan(ctx, config_path):
    """Print the stages a workflow would run in."""
    jobs = _load_or_exit(config_path or ctx.obj["settings"].config_path)
    get_console().print_plan(build_graph(jobs).levels())


if __name__ == "__main__":
    cli()
