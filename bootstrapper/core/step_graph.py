"""Dependency DAG over deployment steps.

Nodes are step ids; an edge A -> B means B depends on A.  Ordering is
Kahn's algorithm with a priority heap, so among ready steps the one with
the smallest sort key always goes first and the result is deterministic.
"""

from __future__ import annotations

import heapq
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from bootstrapper.errors import PlanningError


class CyclicDependencyError(PlanningError):
    """Raised when the step graph contains a cycle."""


class StepGraph:
    """Directed acyclic graph of step dependencies.

    Dependencies on ids outside the graph are treated as already satisfied
    (they refer to steps completed in an earlier run).
    """

    def __init__(self, dependencies: Mapping[str, Iterable[str]]) -> None:
        self._dependencies: dict[str, list[str]] = {
            sid: [d for d in deps if d in dependencies]
            for sid, deps in dependencies.items()
        }
        # Reverse edges: step_id -> steps that depend on it
        self._dependents: dict[str, list[str]] = {sid: [] for sid in self._dependencies}
        for sid, deps in self._dependencies.items():
            for dep in deps:
                self._dependents[dep].append(sid)

        self._validate_no_cycles()

    def _validate_no_cycles(self) -> None:
        in_degree = {sid: len(deps) for sid, deps in self._dependencies.items()}
        queue = deque(sid for sid, deg in in_degree.items() if deg == 0)
        visited = 0

        while queue:
            node = queue.popleft()
            visited += 1
            for dep in self._dependents[node]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if visited != len(self._dependencies):
            stuck = sorted(sid for sid, deg in in_degree.items() if deg > 0)
            raise CyclicDependencyError(
                f"Step graph has a cycle. Visited {visited}/{len(self._dependencies)} "
                f"steps; unresolved: {', '.join(stuck)}"
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def ordered(self, sort_key: Callable[[str], Any] | None = None) -> list[str]:
        """Topological order; ties broken by ``sort_key(step_id)`` then id."""
        key_of = sort_key or (lambda sid: ())
        in_degree = {sid: len(deps) for sid, deps in self._dependencies.items()}
        heap = [(key_of(sid), sid) for sid, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)

        result: list[str] = []
        while heap:
            _, node = heapq.heappop(heap)
            result.append(node)
            for dep in self._dependents[node]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    heapq.heappush(heap, (key_of(dep), dep))
        return result

    def waves(self, order: list[str] | None = None) -> list[list[str]]:
        """Group steps into waves whose dependencies all lie in earlier waves.

        Within a wave steps keep their position in *order* (default:
        :meth:`ordered`).
        """
        order = order or self.ordered()
        depth: dict[str, int] = {}
        for sid in order:
            deps = self._dependencies[sid]
            depth[sid] = 1 + max((depth[d] for d in deps), default=-1)

        waves: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for sid in order:
            waves[depth[sid]].append(sid)
        return waves
