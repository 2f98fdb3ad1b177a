# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set

from .errors import CycleError, ValidationError
from .model import Job


class DependencyGraph:
    """
    Job dependency graph.

    Vertices are job names. An edge `a -> b` means b needs a:
      - dependents[a]   = {b, ...}  (who is unlocked when a finishes)
      - dependencies[b] = {a, ...}  (what b waits for)

    Instances are only produced by `build_graph`, which guarantees the
    graph is acyclic and every edge endpoint is a known job.
    """

    def __init__(self, dependents: Dict[str, Set[str]], dependencies: Dict[str, Set[str]]):
        self.dependents = dependents
        self.dependencies = dependencies

    @property
    def names(self) -> List[str]:
        return sorted(self.dependents)

    def __contains__(self, name: object) -> bool:
        return name in self.dependents

    def __len__(self) -> int:
        return len(self.dependents)

    def dependents_of(self, name: str) -> List[str]:
        return sorted(self.dependents[name])

    def dependencies_of(self, name: str) -> List[str]:
        return sorted(self.dependencies[name])

    def indegrees(self) -> Dict[str, int]:
        return {n: len(deps) for n, deps in self.dependencies.items()}

    def topological_order(self) -> List[str]:
        return [name for level in self.levels() for name in level]

    def levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        return _topo_levels(self.dependents, self.indegrees())

    def transitive_dependents(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        q = deque(self.dependents[name])
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self.dependents[node])
        return seen


def _topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []
        unlocked: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    unlocked.append(child)

        q.extend(sorted(unlocked))
        levels.append(level)

    if processed != len(indeg):
        raise CycleError(n for n, d in indeg.items() if d > 0)

    return levels


def build_graph(jobs: Iterable[Job]) -> DependencyGraph:
    """
    Build a DAG from Job objects.

    Raises:
      ValidationError: duplicate job names, or `needs` naming an unknown job
      CycleError: the dependencies form a cycle
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValidationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    dependents: Dict[str, Set[str]] = {n: set() for n in name_set}
    dependencies: Dict[str, Set[str]] = {n: set() for n in name_set}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise ValidationError(
                    f"Job '{job.name}' needs missing job '{dep}'. Known jobs: {sorted(name_set)}",
                    job=job.name,
                )
            # Edge dep -> job.name (dep must run before job)
            dependents[dep].add(job.name)
            dependencies[job.name].add(dep)

    graph = DependencyGraph(dependents, dependencies)
    # Fail before anything can be scheduled
    graph.levels()
    return graph


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------

def ready_jobs(graph: DependencyGraph, completed: Iterable[str], running: Iterable[str]) -> List[str]:
    """
    Jobs whose dependencies are all completed and which are neither running
    nor completed themselves, in lexical order.
    """
    completed = set(completed)
    running = set(running)
    return [
        name
        for name in graph.names
        if name not in completed
        and name not in running
        and graph.dependencies[name] <= completed
    ]


def topological_order(graph: DependencyGraph) -> List[str]:
    return graph.topological_order()


def dependents(graph: DependencyGraph, name: str) -> List[str]:
    return graph.dependents_of(name)


def dependencies(graph: DependencyGraph, name: str) -> List[str]:
    return graph.dependencies_of(name)


class ReadinessTracker:
    """
    Live in-degree tracking for one run.

    Each completed dependency decrements its dependents' counters, so
    readiness never needs a walk over the whole graph.
    """

    def __init__(self, graph: DependencyGraph):
        self.graph = graph
        self._remaining = graph.indegrees()
        self._ready: Set[str] = {n for n, d in self._remaining.items() if d == 0}
        self._completed: Set[str] = set()

    def ready(self) -> List[str]:
        return sorted(self._ready)

    def take(self, name: str) -> None:
        """Mark a ready job as dispatched."""
        if name not in self._ready:
            raise ValueError(f"Job '{name}' is not ready")
        self._ready.discard(name)

    def complete(self, name: str) -> List[str]:
        """Record a successful job; returns the names it unlocked."""
        if name in self._completed:
            return []
        self._completed.add(name)
        self._ready.discard(name)

        unlocked: List[str] = []
        for child in self.graph.dependents_of(name):
            self._remaining[child] -= 1
            if self._remaining[child] == 0:
                self._ready.add(child)
                unlocked.append(child)
        return unlocked

    def discard(self, names: Iterable[str]) -> None:
        """Drop jobs that will never run (skipped or cancelled)."""
        for name in names:
            self._ready.discard(name)

    def unreachable_from(self, name: str) -> Set[str]:
        return self.graph.transitive_dependents(name)
