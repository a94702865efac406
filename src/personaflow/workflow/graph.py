"""
Dependency graph over workflow stages.

Builds the stage DAG (with the implicit "previous stage" rule applied),
rejects cycles and groups stages into execution waves.
"""

import logging
from typing import Dict, List, Set

from personaflow.exceptions import WorkflowValidationError
from personaflow.workflow.models import WorkflowDefinition

logger = logging.getLogger(__name__)


class WorkflowGraph:
    """
    Stage dependency graph for one WorkflowDefinition.

    Waves are maximal groups of stages whose dependencies all sit in earlier
    waves. Inside a wave, stages keep declaration order, so the topological
    order is deterministic.
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self._order: List[str] = definition.stage_names()
        self._deps: Dict[str, List[str]] = {}
        self._dependents: Dict[str, List[str]] = {name: [] for name in self._order}

        errors = definition.validate_references()
        if errors:
            raise WorkflowValidationError(
                f"Invalid workflow '{definition.name}': {'; '.join(errors)}", errors
            )

        for name in self._order:
            deps = definition.resolved_dependencies(name)
            self._deps[name] = deps
            for dep in deps:
                self._dependents[dep].append(name)

        self._waves = self._build_waves()

    def _build_waves(self) -> List[List[str]]:
        remaining = {name: set(deps) for name, deps in self._deps.items()}
        placed: Set[str] = set()
        waves: List[List[str]] = []

        while remaining:
            wave = [
                name for name in self._order
                if name in remaining and remaining[name] <= placed
            ]
            if not wave:
                cycle = self._find_cycle(set(remaining))
                raise WorkflowValidationError(
                    f"Workflow '{self.definition.name}' has a dependency cycle: "
                    f"{' -> '.join(cycle)}",
                    [f"cycle: {' -> '.join(cycle)}"],
                )
            for name in wave:
                del remaining[name]
            placed.update(wave)
            waves.append(wave)

        logger.debug(f"Workflow '{self.definition.name}' waves: {waves}")
        return waves

    def _find_cycle(self, candidates: Set[str]) -> List[str]:
        """Walk dependency edges among unplaced stages until a stage repeats."""
        start = next(name for name in self._order if name in candidates)
        path = [start]
        seen = {start: 0}
        current = start
        while True:
            current = next(dep for dep in self._deps[current] if dep in candidates)
            if current in seen:
                return path[seen[current]:] + [current]
            seen[current] = len(path)
            path.append(current)

    # =========================================================================
    # Queries
    # =========================================================================

    def dependencies(self, stage: str) -> List[str]:
        return list(self._deps[stage])

    def dependents(self, stage: str) -> List[str]:
        return list(self._dependents[stage])

    def descendants(self, stage: str) -> List[str]:
        """Every stage that transitively depends on `stage`, in topological order."""
        found: Set[str] = set()
        stack = list(self._dependents[stage])
        while stack:
            name = stack.pop()
            if name not in found:
                found.add(name)
                stack.extend(self._dependents[name])
        return [name for name in self.topological_order() if name in found]

    def waves(self) -> List[List[str]]:
        return [list(wave) for wave in self._waves]

    def topological_order(self) -> List[str]:
        return [name for wave in self._waves for name in wave]

    def describe(self) -> List[Dict[str, object]]:
        """Plan summary used by the CLI and the gateway."""
        plan = []
        for index, wave in enumerate(self._waves, start=1):
            for name in wave:
                stage = self.definition.get_stage(name)
                plan.append({
                    "wave": index,
                    "stage": name,
                    "roles": list(stage.roles),
                    "parallel": stage.parallel,
                    "depends_on": self.dependencies(name),
                })
        return plan
