"""Console output formatting utilities for Loom."""

from __future__ import annotations

import sys
from typing import Dict, List, Optional

from ..model import Job, JobResult, JobState, LogEvent


STATE_MARKS = {
    JobState.SUCCESS: "✓",
    JobState.FAILED: "✗",
    JobState.SKIPPED: "⏭",
    JobState.CANCELLED: "■",
    JobState.PENDING: "…",
    JobState.RUNNING: "▶",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, workflow: str, workspace: str, job_count: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Workflow: {workflow}")
        print(f"Workspace: {workspace}")
        print(f"Jobs: {job_count}")
        print()

    def print_log(self, event: LogEvent) -> None:
        """Print one line of step output, prefixed with its job and step."""
        out = sys.stderr if event.stream == "stderr" else sys.stdout
        print(f"[{event.job}/{event.step}] {event.line}", file=out, flush=True)

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print execution stages."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels):
            print(f"  Stage {idx + 1}: {', '.join(level)}")

    def print_results(self, jobs: List[Job], results: Dict[str, JobResult]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job in jobs:
            mark = STATE_MARKS.get(job.state, "?")
            line = f"  {mark} {job.name}: {job.state.value.upper()}"
            result = results.get(job.name)
            failed = result.failed_step if result is not None else None
            if failed is not None:
                line += f" (step '{failed.step}' exit={failed.exit_code})"
            elif result is not None and result.error:
                line += f" ({result.error.splitlines()[0]})"
            print(line)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
