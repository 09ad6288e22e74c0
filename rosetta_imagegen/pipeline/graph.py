"""Stage dependency graph for the multi-stage build.

Stages form a DAG: nodes are stages with an input image and an output
(image layer or file set), edges are image or artifact dependencies.
The graph is used to order stages for rendering, to validate a requested
build target, and to report which stages a target pulls in. Execution
itself is delegated to BuildKit.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from rosetta_imagegen.pipeline.schema import PipelineSchema
from rosetta_imagegen.types import StageKind, StageOutput

ALL_TARGETS = "all"


class CyclicDependencyError(ValueError):
    """Raised when the stage graph contains a cycle."""

    def __init__(self, message: str, code: str = "cyclic_dependency") -> None:
        super().__init__(message)
        self.code = code


class UnknownStageError(KeyError):
    """Raised when a stage name is not part of the graph."""

    def __init__(self, name: str, known: list[str], code: str = "unknown_stage") -> None:
        super().__init__(name)
        self.name = name
        self.known = known
        self.code = code

    def __str__(self) -> str:
        return f"Unknown stage '{self.name}'. Known stages: {', '.join(self.known)}"


@dataclass(frozen=True)
class Stage:
    """A single build stage.

    Attributes:
        name: Stage name as used in the Dockerfile.
        kind: Role of the stage.
        image: Input image (an external reference or another stage name).
        depends_on: Names of stages this stage consumes.
        output: Whether the stage yields an image or a set of files.
    """

    name: str
    kind: StageKind
    image: str
    depends_on: tuple[str, ...] = field(default_factory=tuple)
    output: StageOutput = StageOutput.IMAGE


class StageGraph:
    """Directed acyclic graph of build stages."""

    def __init__(self, stages: list[Stage]) -> None:
        self._order = [s.name for s in stages]
        self._stages: dict[str, Stage] = {s.name: s for s in stages}
        if len(self._stages) != len(stages):
            raise ValueError("stage names must be unique")

        self._dependents: dict[str, list[str]] = {s.name: [] for s in stages}
        for stage in stages:
            for dep in stage.depends_on:
                if dep not in self._stages:
                    raise UnknownStageError(dep, self._order)
                self._dependents[dep].append(stage.name)

        self._topological = self._compute_topological_order()

    @classmethod
    def from_pipeline(cls, pipeline: PipelineSchema) -> StageGraph:
        """Build the stage graph for a pipeline description."""
        base = pipeline.base_image
        toolchain = pipeline.toolchain
        builder = pipeline.builder
        runtime = pipeline.runtime
        return cls(
            [
                Stage(
                    name=base.stage_name,
                    kind=StageKind.BASE,
                    image=base.image,
                ),
                Stage(
                    name=toolchain.stage_name,
                    kind=StageKind.TOOLCHAIN,
                    image=toolchain.image,
                ),
                Stage(
                    name=builder.stage_name,
                    kind=StageKind.BUILDER,
                    image=toolchain.stage_name,
                    depends_on=(toolchain.stage_name,),
                    output=StageOutput.FILES,
                ),
                Stage(
                    name=runtime.stage_name,
                    kind=StageKind.RUNTIME,
                    image=base.stage_name,
                    depends_on=(base.stage_name, builder.stage_name),
                ),
            ]
        )

    def _compute_topological_order(self) -> list[str]:
        """Kahn's algorithm; ties keep declaration order."""
        in_degree = {name: len(s.depends_on) for name, s in self._stages.items()}
        position = {name: i for i, name in enumerate(self._order)}
        queue = deque(name for name in self._order if in_degree[name] == 0)
        result: list[str] = []

        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(self._dependents[node], key=position.__getitem__):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(result) != len(self._stages):
            stuck = [n for n in self._order if n not in result]
            raise CyclicDependencyError(
                f"Stage graph has a cycle involving: {', '.join(stuck)}"
            )
        return result

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def names(self) -> list[str]:
        """Stage names in declaration order."""
        return list(self._order)

    def get(self, name: str) -> Stage:
        """Return a stage by name.

        Raises:
            UnknownStageError: If the stage does not exist.
        """
        try:
            return self._stages[name]
        except KeyError:
            raise UnknownStageError(name, self._order) from None

    def topological_order(self) -> list[Stage]:
        """Return stages so that every stage follows its dependencies."""
        return [self._stages[n] for n in self._topological]

    def dependencies(self, name: str) -> list[str]:
        """Return direct dependencies of a stage."""
        return list(self.get(name).depends_on)

    def ancestors(self, name: str) -> set[str]:
        """Return all transitive dependencies of a stage."""
        result: set[str] = set()
        queue = deque(self.get(name).depends_on)
        while queue:
            node = queue.popleft()
            if node in result:
                continue
            result.add(node)
            queue.extend(self._stages[node].depends_on)
        return result

    def dependents(self, name: str) -> set[str]:
        """Return all stages that transitively depend on a stage."""
        self.get(name)
        result: set[str] = set()
        queue = deque(self._dependents[name])
        while queue:
            node = queue.popleft()
            if node in result:
                continue
            result.add(node)
            queue.extend(self._dependents[node])
        return result

    @property
    def final_stage(self) -> Stage:
        """The stage nothing else depends on (the assembled image).

        Raises:
            ValueError: If the graph has no single final stage.
        """
        finals = [n for n in self._topological if not self._dependents[n]]
        if len(finals) != 1:
            raise ValueError(
                f"expected exactly one final stage, found: {', '.join(finals)}"
            )
        return self._stages[finals[0]]

    def is_full_build(self, target: str | None) -> bool:
        """Whether building target produces the final image."""
        return target in (None, ALL_TARGETS) or target == self.final_stage.name

    def stages_for_target(self, target: str | None = None) -> list[Stage]:
        """Return the stages needed to build a target, in build order.

        Args:
            target: Stage name, or None/'all' for the whole pipeline.

        Raises:
            UnknownStageError: If target is not a stage.
        """
        if target in (None, ALL_TARGETS):
            return self.topological_order()
        needed = self.ancestors(target) | {target}
        return [s for s in self.topological_order() if s.name in needed]


__all__ = [
    "ALL_TARGETS",
    "CyclicDependencyError",
    "Stage",
    "StageGraph",
    "UnknownStageError",
]
