"""Dependency graph over a snapshot of tasks."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from rulebook.errors import CycleDetectedError
from rulebook.tasks.models import SATISFIED_DEPENDENCY_STATUSES, Task, TaskStatus

_WHITE = 0
_GRAY = 1
_BLACK = 2


@dataclass(slots=True, frozen=True)
class TaskGraph:
    """Adjacency map from task id to the ids it depends on.

    Built from a point-in-time snapshot; callers rebuild it after store
    mutations instead of updating it in place.
    """

    adjacency: Mapping[str, frozenset[str]]
    statuses: Mapping[str, TaskStatus]

    @classmethod
    def build(cls, tasks: Iterable[Task]) -> TaskGraph:
        adjacency: dict[str, frozenset[str]] = {}
        statuses: dict[str, TaskStatus] = {}
        for task in tasks:
            adjacency[task.id] = frozenset(task.dependencies)
            statuses[task.id] = task.status
        return cls(adjacency=adjacency, statuses=statuses)

    def with_dependencies(self, task_id: str, dependencies: frozenset[str]) -> TaskGraph:
        """Return a graph where ``task_id`` has the given dependency set."""

        adjacency = dict(self.adjacency)
        adjacency[task_id] = dependencies
        statuses = dict(self.statuses)
        statuses.setdefault(task_id, TaskStatus.PENDING)
        return TaskGraph(adjacency=adjacency, statuses=statuses)

    def detect_cycles(self) -> None:
        """Raise :class:`CycleDetectedError` for the first cycle found.

        Nodes are visited in lexical order so the reported path is stable:
        for ``a -> b -> c -> a`` the path is ``[a, b, c]``.
        """

        cycles = self.find_cycles(first_only=True)
        if cycles:
            raise CycleDetectedError(cycles[0])

    def find_cycles(self, *, first_only: bool = False) -> list[list[str]]:
        """Three-colour depth-first search returning every back-edge cycle."""

        colour = dict.fromkeys(self.adjacency, _WHITE)
        cycles: list[list[str]] = []

        for root in sorted(self.adjacency):
            if colour[root] != _WHITE:
                continue
            path: list[str] = [root]
            stack = [iter(self._known_dependencies(root))]
            colour[root] = _GRAY
            while stack:
                node = path[-1]
                child = next(stack[-1], None)
                if child is None:
                    colour[node] = _BLACK
                    path.pop()
                    stack.pop()
                    continue
                if colour[child] == _GRAY:
                    cycles.append(path[path.index(child) :])
                    if first_only:
                        return cycles
                    continue
                if colour[child] == _WHITE:
                    colour[child] = _GRAY
                    path.append(child)
                    stack.append(iter(self._known_dependencies(child)))
        return cycles

    def cycle_members(self) -> frozenset[str]:
        """Ids of every task that sits on a dependency cycle."""

        members: set[str] = set()
        for cycle in self.find_cycles():
            members.update(cycle)
        return frozenset(members)

    def compute_ready(self) -> list[str]:
        """Pending tasks whose dependencies are all satisfied, in lexical order.

        Tasks on a cycle are never ready.  A dependency on an id missing from
        the snapshot is unsatisfied.
        """

        blocked_by_cycle = self.cycle_members()
        ready: list[str] = []
        for task_id in sorted(self.adjacency):
            if self.statuses.get(task_id) != TaskStatus.PENDING:
                continue
            if task_id in blocked_by_cycle:
                continue
            if self.dependencies_satisfied(task_id):
                ready.append(task_id)
        return ready

    def dependencies_satisfied(self, task_id: str) -> bool:
        return all(
            self.statuses.get(dependency) in SATISFIED_DEPENDENCY_STATUSES
            for dependency in self.adjacency.get(task_id, frozenset())
        )

    def unsatisfied_dependencies(self, task_id: str) -> list[str]:
        return sorted(
            dependency
            for dependency in self.adjacency.get(task_id, frozenset())
            if self.statuses.get(dependency) not in SATISFIED_DEPENDENCY_STATUSES
        )

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; dependencies come first, ties broken lexically."""

        self.detect_cycles()
        in_degree = {task_id: len(self._known_dependencies(task_id)) for task_id in self.adjacency}
        dependents = self._dependents_index()
        heap = [task_id for task_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)

        order: list[str] = []
        while heap:
            task_id = heapq.heappop(heap)
            order.append(task_id)
            for dependent in dependents.get(task_id, ()):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, dependent)
        return order

    def dependents_of(self, task_id: str) -> list[str]:
        """Ids of tasks that list ``task_id`` as a direct dependency."""

        return sorted(self._dependents_index().get(task_id, ()))

    def _known_dependencies(self, task_id: str) -> list[str]:
        return sorted(dep for dep in self.adjacency.get(task_id, ()) if dep in self.adjacency)

    def _dependents_index(self) -> dict[str, list[str]]:
        index: dict[str, list[str]] = {}
        for task_id in sorted(self.adjacency):
            for dependency in self._known_dependencies(task_id):
                index.setdefault(dependency, []).append(task_id)
        return index
