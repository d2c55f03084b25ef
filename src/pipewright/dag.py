# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import ParseError, ParseErrorKind
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Returns:
      adj:   job name -> names of jobs that need it (dep -> dependents)
      indeg: job name -> number of distinct jobs it needs

    Raises ParseError(DuplicateJob | UnknownDependency).
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ParseError(
            ParseErrorKind.DUPLICATE_JOB,
            f"Duplicate job names found: {dupes}",
            {"jobs": dupes},
        )

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise ParseError(
                    ParseErrorKind.UNKNOWN_DEPENDENCY,
                    f"Job '{job.name}' needs missing job '{dep}'",
                    {"job": job.name, "needs": dep, "known": sorted(name_set)},
                )
            # edge dep -> job.name
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Every job of a stage only needs jobs from earlier stages.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ParseError(
            ParseErrorKind.CYCLE_DETECTED,
            f"Dependency cycle between jobs: {remaining}",
            {"jobs": remaining},
        )

    return levels


def dependents(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """All transitive dependents of `name` (not including itself)."""
    seen: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(adj.get(node, ()))
    return seen


def validate(jobs: List[Job]) -> List[List[str]]:
    """Full structural validation; returns the stages on success."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)
