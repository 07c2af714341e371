# dag.py
from __future__ import annotations

import heapq
from collections import deque
from typing import Dict, List, Sequence, Set, Tuple

from .errors import ConfigurationError
from .model import StageDefinition


def build_dag(stages: Sequence[StageDefinition]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from stage definitions.

    Requires:
      - stage.name: str (unique)
      - stage.needs: names of stages that must run BEFORE this stage
    """
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate stage names: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for stage in stages:
        for need in stage.needs:
            if need not in name_set:
                raise ConfigurationError(
                    f"Stage '{stage.name}' needs missing stage '{need}'",
                    details={"known": sorted(name_set)},
                )
            # Edge need -> stage.name (need must run before stage)
            if stage.name not in adj[need]:
                adj[need].add(stage.name)
                indeg[stage.name] += 1

    return adj, indeg


def order_stages(stages: Sequence[StageDefinition]) -> List[StageDefinition]:
    """
    Dependency-respecting order. Among stages whose dependencies are met,
    the one declared first goes first, so the result is stable.
    """
    stages = list(stages)
    adj, indeg = build_dag(stages)
    index = {s.name: i for i, s in enumerate(stages)}
    indeg = dict(indeg)

    heap = [index[n] for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)

    ordered: List[StageDefinition] = []
    while heap:
        stage = stages[heapq.heappop(heap)]
        ordered.append(stage)
        for child in adj[stage.name]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, index[child])

    if len(ordered) != len(stages):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError(f"Stage graph has a cycle. Stuck stages: {stuck}")

    return ordered


def topo_levels(stages: Sequence[StageDefinition]) -> List[List[str]]:
    """
    Group stages into levels. Everything in one level only depends on
    earlier levels, so a level's stages are independent of each other.
    """
    stages = list(stages)
    adj, indeg = build_dag(stages)
    index = {s.name: i for i, s in enumerate(stages)}
    indeg = dict(indeg)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=index.__getitem__))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj[node], key=index.__getitem__):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError(f"Stage graph has a cycle. Stuck stages: {remaining}")

    return levels
