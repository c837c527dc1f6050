"""Stage Graph — static DAG of stages with validated inputs and outputs.

The graph enforces, at construction time and before any run starts:
- Stage ids are unique and every dependency names a known stage.
- The dependency relation is acyclic.
- Every artifact/output key has exactly one producing stage.
- Every required input is produced by a transitive dependency of the
  consumer, so it is published before the consumer can start.
"""

from __future__ import annotations

import heapq
from collections import deque

from pipewright.models.stages import StageDefinition, StageStatus


class ConfigurationError(ValueError):
    """Raised when a stage graph definition is malformed."""


class CyclicDependencyError(ConfigurationError):
    """Raised when the stage graph contains a cycle."""


class StageGraph:
    """Directed acyclic graph of stage dependencies.

    Topological order is deterministic: among stages that become ready at
    the same time, declaration order wins.
    """

    def __init__(self, stage_definitions: list[StageDefinition]) -> None:
        self._declared: list[str] = []
        self._stages: dict[str, StageDefinition] = {}
        for sd in stage_definitions:
            if not sd.stage_id:
                raise ConfigurationError("Stage id must not be empty.")
            if sd.stage_id in self._stages:
                raise ConfigurationError(f"Duplicate stage id: {sd.stage_id!r}")
            self._stages[sd.stage_id] = sd
            self._declared.append(sd.stage_id)

        # Forward edges: stage_id -> dependencies
        self._dependencies: dict[str, list[str]] = {}
        # Reverse edges: stage_id -> stages that depend on it
        self._dependents: dict[str, list[str]] = {sid: [] for sid in self._declared}
        for sd in stage_definitions:
            deps: list[str] = []
            for dep in sd.depends_on:
                if dep not in self._stages:
                    raise ConfigurationError(
                        f"Stage {sd.stage_id!r} depends on unknown stage {dep!r}"
                    )
                if dep not in deps:
                    deps.append(dep)
                    self._dependents[dep].append(sd.stage_id)
            self._dependencies[sd.stage_id] = deps

        self._order = self._topological_order()
        self._index = {sid: i for i, sid in enumerate(self._order)}
        self._producers = self._validate_io()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm with a declaration-order priority queue."""
        position = {sid: i for i, sid in enumerate(self._declared)}
        in_degree = {sid: len(deps) for sid, deps in self._dependencies.items()}
        ready = [position[sid] for sid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        order: list[str] = []

        while ready:
            node = self._declared[heapq.heappop(ready)]
            order.append(node)
            for dep in self._dependents[node]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    heapq.heappush(ready, position[dep])

        if len(order) != len(self._stages):
            stuck = sorted(sid for sid, deg in in_degree.items() if deg > 0)
            raise CyclicDependencyError(
                f"Stage graph has a cycle. Visited {len(order)}/{len(self._stages)} "
                f"stages; unresolved: {', '.join(stuck)}"
            )
        return order

    def _validate_io(self) -> dict[str, str]:
        producers: dict[str, str] = {}
        for sid in self._order:
            sd = self._stages[sid]
            overlap = set(sd.produced_artifacts) & set(sd.produced_outputs)
            if overlap:
                raise ConfigurationError(
                    f"Stage {sid!r} declares {sorted(overlap)} as both artifact and output"
                )
            for key in sorted(sd.produced_keys):
                if key in producers:
                    raise ConfigurationError(
                        f"Key {key!r} is produced by both {producers[key]!r} and {sid!r}"
                    )
                producers[key] = sid

        for sid in self._order:
            ancestors = self.get_ancestors(sid)
            for key in self._stages[sid].required_inputs:
                producer = producers.get(key)
                if producer is None:
                    raise ConfigurationError(
                        f"Stage {sid!r} requires {key!r} but no stage produces it"
                    )
                if producer not in ancestors:
                    raise ConfigurationError(
                        f"Stage {sid!r} requires {key!r} from {producer!r} "
                        f"but does not (transitively) depend on it"
                    )
        return producers

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def stage_ids(self) -> list[str]:
        """All stage ids in topological order."""
        return list(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._stages

    def index(self, stage_id: str) -> int:
        """Position of *stage_id* in the topological order."""
        return self._index[stage_id]

    def get_stage_definition(self, stage_id: str) -> StageDefinition:
        return self._stages[stage_id]

    def get_dependencies(self, stage_id: str) -> list[str]:
        """Direct dependencies of a stage."""
        return list(self._dependencies.get(stage_id, []))

    def get_dependents(self, stage_id: str) -> list[str]:
        """All transitive dependents (BFS), in topological order."""
        return self._closure(stage_id, self._dependents)

    def get_ancestors(self, stage_id: str) -> list[str]:
        """All transitive dependencies, in topological order."""
        return self._closure(stage_id, self._dependencies)

    def _closure(self, stage_id: str, edges: dict[str, list[str]]) -> list[str]:
        visited: set[str] = set()
        queue = deque(edges.get(stage_id, []))
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            queue.extend(edges.get(node, []))
        return sorted(visited, key=self._index.__getitem__)

    def producer_of(self, key: str) -> str | None:
        return self._producers.get(key)

    # ------------------------------------------------------------------
    # Dependency checking
    # ------------------------------------------------------------------

    def are_dependencies_met(
        self, stage_id: str, statuses: dict[str, StageStatus]
    ) -> bool:
        """True if every dependency has succeeded."""
        return all(
            statuses.get(dep) == StageStatus.SUCCEEDED
            for dep in self._dependencies.get(stage_id, [])
        )

    def unmet_dependency(
        self, stage_id: str, statuses: dict[str, StageStatus]
    ) -> str | None:
        """First dependency (topological order) that failed or was cancelled."""
        for dep in sorted(self._dependencies.get(stage_id, []), key=self.index):
            if statuses.get(dep) in (StageStatus.FAILED, StageStatus.CANCELLED):
                return dep
        return None

    def get_blocking_reasons(
        self, stage_id: str, statuses: dict[str, StageStatus]
    ) -> list[str]:
        """Human-readable reasons why a stage cannot start."""
        reasons = []
        for dep in self._dependencies.get(stage_id, []):
            status = statuses.get(dep, StageStatus.PENDING)
            if status != StageStatus.SUCCEEDED:
                reasons.append(f"{self._stages[dep].name} ({dep}) is {status.value}")
        return reasons
