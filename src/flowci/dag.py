# dag.py
from __future__ import annotations

from typing import Dict, Iterable, List, Set, Tuple

from .errors import InvalidJobSpec
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Edges of the `needs` graph: job -> jobs that wait for it, plus in-degrees.

    Raises:
      InvalidJobSpec: duplicate job name, or `needs` naming an unknown job
    """
    jobs = list(jobs)
    seen: Set[str] = set()
    for j in jobs:
        if j.name in seen:
            raise InvalidJobSpec(f"Duplicate job name '{j.name}'", job=j.name)
        seen.add(j.name)

    dependents: Dict[str, Set[str]] = {j.name: set() for j in jobs}
    indeg: Dict[str, int] = {j.name: 0 for j in jobs}

    for j in jobs:
        for dep in j.needs:
            if dep not in dependents:
                raise InvalidJobSpec(
                    f"Job '{j.name}' needs missing job '{dep}'",
                    job=j.name,
                    details={"known_jobs": sorted(dependents)},
                )
            if j.name not in dependents[dep]:
                dependents[dep].add(j.name)
                indeg[j.name] += 1

    return dependents, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Kahn's algorithm, one level at a time: every job of a level only needs
    jobs of earlier levels. Declaration order is kept inside a level.
    """
    order = list(indeg)  # dict order is declaration order
    indeg = dict(indeg)
    level = [n for n in order if indeg[n] == 0]
    levels: List[List[str]] = []
    placed = 0

    while level:
        levels.append(level)
        placed += len(level)
        unlocked: Set[str] = set()
        for node in level:
            for child in adj.get(node, ()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    unlocked.add(child)
        level = [n for n in order if n in unlocked]

    if placed != len(order):
        stuck = [n for n in order if indeg[n] > 0]
        raise InvalidJobSpec("Job graph has a cycle", details={"stuck_jobs": stuck})

    return levels


def stages(jobs: Iterable[Job]) -> List[List[str]]:
    return topo_levels(*build_dag(jobs))
