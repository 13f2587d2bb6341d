"""Dependency graph of tasks keyed by declared ``needs`` edges.

The graph enforces, before anything is scheduled:
- task names are unique;
- every ``needs`` edge points at a defined task;
- the graph is acyclic;
- every artifact name has at most one producer, and every consumed
  artifact is produced by a transitive dependency of its consumer.

Within a wave, tasks are ordered by declaration order.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator

from gantry.core.errors import (
    CycleError,
    DanglingDependencyError,
    DuplicateNameError,
    DuplicateOutputError,
    UnresolvedArtifactError,
)
from gantry.models.pipeline import PipelineDefinition
from gantry.models.tasks import TaskDefinition


class DependencyGraph:
    """Directed acyclic graph of pipeline tasks.

    Tasks may reference dependencies that are added later; such edges are
    only checked for dangling targets in ``validate()``. Cycles are
    rejected as soon as the closing edge is added.
    """

    def __init__(self, tasks: Iterable[TaskDefinition] = ()) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        # Forward edges: task -> tasks it needs
        self._needs: dict[str, list[str]] = {}
        # Reverse edges: task -> tasks that need it (may include undefined names)
        self._dependents: dict[str, list[str]] = {}
        for task in tasks:
            self.add_task(task)

    @classmethod
    def from_pipeline(cls, definition: PipelineDefinition) -> DependencyGraph:
        """Build and fully validate the graph of a pipeline definition."""
        graph = cls(definition.tasks)
        graph.validate()
        return graph

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_task(
        self, task: TaskDefinition, depends_on: Iterable[str] | None = None
    ) -> None:
        """Add *task* with edges to *depends_on* (defaults to ``task.needs``).

        Raises ``DuplicateNameError`` or ``CycleError``; the graph is left
        unchanged when either is raised.
        """
        deps = list(dict.fromkeys(task.needs if depends_on is None else depends_on))
        name = task.name

        if name in self._tasks:
            raise DuplicateNameError(f"Task {name!r} is defined more than once.")
        if name in deps:
            raise CycleError(f"Task {name!r} depends on itself.")

        # Earlier tasks may already need this one; adding it closes a cycle
        # iff one of its dependencies transitively needs it.
        for dep in deps:
            path = self._find_path(dep, name)
            if path:
                cycle = " -> ".join([name, *path])
                raise CycleError(f"Dependency cycle: {cycle}")

        if list(task.needs) != deps:
            task = task.model_copy(update={"needs": deps})
        self._tasks[name] = task
        self._needs[name] = deps
        self._dependents.setdefault(name, [])
        for dep in deps:
            self._dependents.setdefault(dep, []).append(name)

    def _find_path(self, start: str, target: str) -> list[str]:
        """Return a ``needs`` path from *start* to *target*, or ``[]``."""
        parent: dict[str, str | None] = {start: None}
        stack = [start]
        while stack:
            node = stack.pop()
            if node == target:
                path = [node]
                while parent[path[-1]] is not None:
                    path.append(parent[path[-1]])
                return path[::-1]
            for dep in self._needs.get(node, []):
                if dep not in parent:
                    parent[dep] = node
                    stack.append(dep)
        return []

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Reject dangling edges, cycles, and broken artifact hand-offs."""
        for name, deps in self._needs.items():
            missing = [d for d in deps if d not in self._tasks]
            if missing:
                raise DanglingDependencyError(
                    f"Task {name!r} needs undefined task(s): {', '.join(missing)}"
                )
        self._validate_no_cycles()
        self._validate_artifacts()

    def _validate_no_cycles(self) -> None:
        """Verify the graph is a DAG using Kahn's algorithm."""
        in_degree = {name: len(deps) for name, deps in self._needs.items()}
        queue = deque(name for name, deg in in_degree.items() if deg == 0)
        visited = 0

        while queue:
            node = queue.popleft()
            visited += 1
            for dep in self._dependents.get(node, []):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if visited != len(self._tasks):
            stuck = sorted(name for name, deg in in_degree.items() if deg > 0)
            raise CycleError(
                f"Dependency graph has a cycle among: {', '.join(stuck)}"
            )

    def _validate_artifacts(self) -> None:
        producers: dict[str, str] = {}
        for task in self._tasks.values():
            for artifact in task.outputs:
                if artifact in producers:
                    raise DuplicateOutputError(
                        f"Artifact {artifact!r} is declared by both "
                        f"{producers[artifact]!r} and {task.name!r}."
                    )
                producers[artifact] = task.name

        for task in self._tasks.values():
            ancestors = set(self.ancestors(task.name))
            for artifact in task.inputs:
                producer = producers.get(artifact)
                if producer is None:
                    raise UnresolvedArtifactError(
                        f"Task {task.name!r} consumes {artifact!r}, "
                        f"which no task produces."
                    )
                if producer not in ancestors:
                    raise UnresolvedArtifactError(
                        f"Task {task.name!r} consumes {artifact!r} from "
                        f"{producer!r}, which is not among its dependencies."
                    )

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def topological_batches(self) -> list[list[str]]:
        """Group tasks into waves; every task's dependencies are in earlier waves.

        Validates the whole graph first, so a partial or cyclic graph never
        yields an ordering.
        """
        self.validate()
        order = {name: i for i, name in enumerate(self._tasks)}
        in_degree = {name: len(deps) for name, deps in self._needs.items()}
        wave = [name for name in self._tasks if in_degree[name] == 0]
        batches: list[list[str]] = []

        while wave:
            batches.append(wave)
            next_wave: list[str] = []
            for node in wave:
                for dep in self._dependents.get(node, []):
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        next_wave.append(dep)
            wave = sorted(next_wave, key=order.__getitem__)

        return batches

    def topological_order(self) -> list[str]:
        """Flatten ``topological_batches()`` into a single sequence."""
        return [name for batch in self.topological_batches() for name in batch]

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def task_names(self) -> list[str]:
        """All task names in declaration order."""
        return list(self._tasks)

    def task(self, name: str) -> TaskDefinition:
        """Return the definition of task *name*."""
        return self._tasks[name]

    def dependencies(self, name: str) -> list[str]:
        """Direct dependencies of *name*, in declared order."""
        return list(self._needs.get(name, []))

    def dependents(self, name: str) -> list[str]:
        """Direct dependents of *name*, in declaration order."""
        return [d for d in self._dependents.get(name, []) if d in self._tasks]

    def descendants(self, name: str) -> list[str]:
        """All transitive dependents of *name* (BFS order)."""
        return self._walk(name, self.dependents)

    def ancestors(self, name: str) -> list[str]:
        """All transitive dependencies of *name* (BFS order)."""
        return self._walk(name, self.dependencies)

    def producer_of(self, artifact: str) -> str | None:
        """Name of the task declaring *artifact* as an output, if any."""
        for task in self._tasks.values():
            if artifact in task.outputs:
                return task.name
        return None

    @staticmethod
    def _walk(start: str, neighbours) -> list[str]:
        result: list[str] = []
        visited: set[str] = set()
        queue = deque(neighbours(start))
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(neighbours(node))
        return result

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)
