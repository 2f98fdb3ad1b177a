from .config import load_file, parse_jobs
from .dag import DependencyGraph, ReadinessTracker, build_graph, ready_jobs, topological_order
from .errors import CycleError, ExecutionError, LoomError, StalledRunError, ValidationError
from .executor import ContainerExecutor, HostExecutor, resolve_image
from .logs import LogBroadcaster
from .model import Job, JobResult, JobState, LogEvent, Step, StepOptions, StepResult
from .runner import JobRunner
from .scheduler import Scheduler
from .watcher import PollingChangeSource, Watcher

__version__ = "0.1.0"

__all__ = [
    "load_file", "parse_jobs",
    "DependencyGraph", "ReadinessTracker", "build_graph", "ready_jobs", "topological_order",
    "CycleError", "ExecutionError", "LoomError", "StalledRunError", "ValidationError",
    "ContainerExecutor", "HostExecutor", "resolve_image",
    "LogBroadcaster",
    "Job", "JobResult", "JobState", "LogEvent", "Step", "StepOptions", "StepResult",
    "JobRunner", "Scheduler", "PollingChangeSource", "Watcher",
]
