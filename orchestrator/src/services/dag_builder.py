"""
Compile a pipeline definition into a stage dependency graph.
"""

from typing import Dict, List, Optional, Set

from orchestrator.src.errors import (
    CyclicDependencyError,
    UnknownDependencyError,
    ValidationError,
)
from orchestrator.src.models.pipeline import PipelineDefinition, StageSpec


class StageGraph:
    """
    Validated DAG of stages.

    `order` is a topological order; among stages that are ready at the same
    time, declaration order wins.
    """

    def __init__(self, pipeline: PipelineDefinition, stages: Dict[str, StageSpec],
                 dependencies: Dict[str, List[str]], order: List[str]):
        self.pipeline = pipeline
        self.stages = stages
        self.order = order
        self._dependencies = dependencies
        self._dependents: Dict[str, List[str]] = {name: [] for name in stages}
        for name in order:
            for dep in dependencies[name]:
                self._dependents[dep].append(name)

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, name: str) -> bool:
        return name in self.stages

    def stage(self, name: str) -> StageSpec:
        return self.stages[name]

    def dependencies(self, name: str) -> List[str]:
        return list(self._dependencies[name])

    def dependents(self, name: str) -> List[str]:
        return list(self._dependents[name])

    def descendants(self, name: str) -> Set[str]:
        """All stages that transitively depend on `name`."""
        seen: Set[str] = set()
        stack = list(self._dependents[name])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return seen

    def is_blocking(self, name: str) -> bool:
        return bool(self.stages[name].blocking)


def build(pipeline: PipelineDefinition) -> StageGraph:
    """
    Validate a pipeline and return its stage graph.

    When no stage declares `depends_on`, stages are chained in declaration
    order and are blocking unless they say otherwise. With explicit
    dependencies, stages default to non-blocking so independent branches
    keep running after a failure.

    Raises:
        ValidationError: duplicate or empty stage names.
        UnknownDependencyError: a dependency names an undeclared stage.
        CyclicDependencyError: dependencies form a cycle.
    """
    if not pipeline.stages:
        raise ValidationError("Pipeline must have at least one stage")

    declared: List[str] = []
    for stage in pipeline.stages:
        if not stage.name.strip():
            raise ValidationError("Stage name must be a non-empty string")
        if stage.name in declared:
            raise ValidationError(f"Duplicate stage name: {stage.name}")
        declared.append(stage.name)

    linear = all(stage.depends_on is None for stage in pipeline.stages)

    dependencies: Dict[str, List[str]] = {}
    stages: Dict[str, StageSpec] = {}
    for index, stage in enumerate(pipeline.stages):
        if linear:
            deps = [declared[index - 1]] if index > 0 else []
        else:
            deps = list(dict.fromkeys(stage.depends_on or []))
            for dep in deps:
                if dep not in declared:
                    raise UnknownDependencyError(
                        f"Stage '{stage.name}' depends on unknown stage '{dep}'"
                    )
        dependencies[stage.name] = deps

        blocking = stage.blocking if stage.blocking is not None else linear
        stages[stage.name] = stage.model_copy(update={"depends_on": deps, "blocking": blocking})

    cycle = _find_cycle(declared, dependencies)
    if cycle:
        raise CyclicDependencyError(cycle)

    return StageGraph(pipeline, stages, dependencies, _topological_order(declared, dependencies))


def _find_cycle(names: List[str], dependencies: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one cycle as a closed path (A, B, A), or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in names}

    for root in names:
        if color[root] != WHITE:
            continue
        path: List[str] = [root]
        color[root] = GREY
        stack = [iter(dependencies[root])]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                color[path.pop()] = BLACK
                stack.pop()
            elif color[dep] == GREY:
                cycle = path[path.index(dep):] + [dep]
                # Report in execution direction: dependency first
                return list(reversed(cycle))
            elif color[dep] == WHITE:
                color[dep] = GREY
                path.append(dep)
                stack.append(iter(dependencies[dep]))
    return None


def _topological_order(names: List[str], dependencies: Dict[str, List[str]]) -> List[str]:
    remaining = {name: len(dependencies[name]) for name in names}
    dependents: Dict[str, List[str]] = {name: [] for name in names}
    for name in names:
        for dep in dependencies[name]:
            dependents[dep].append(name)

    position = {name: i for i, name in enumerate(names)}
    ready = [name for name in names if remaining[name] == 0]
    order: List[str] = []
    while ready:
        name = ready.pop(0)
        order.append(name)
        for child in dependents[name]:
            remaining[child] -= 1
            if remaining[child] == 0:
                ready.append(child)
                ready.sort(key=position.__getitem__)
    return order
