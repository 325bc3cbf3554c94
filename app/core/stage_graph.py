"""Stage dependency graph for the S1-S6 pipeline.

    S1 survey ─► S2 presentation ─► S3 production package ─► S4 assembly
                                              │                  │
                                              ▼                  ▼
                                     S5 stock library ───► S6 production guide PDF

S2-S5 depend on every earlier stage; S6 depends on S3, S4 and S5 only.
Rules are declarative data; readiness, prompt inputs and cascading clears
are pure functions over it.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping

from app.core.pipeline_errors import ValidationError
from app.core.schemas_pipeline import (
    GenerationMode,
    PresentationData,
    StageId,
    StockLibraryData,
    SurveyData,
)

# =============================================================================
# Stage definitions
# =============================================================================


@dataclass(frozen=True)
class StageDefinition:
    stage: StageId
    name: str
    depends_on: frozenset[StageId]
    artifact_ext: str  # json | txt | pdf
    schema: type | None = None  # pydantic model for JSON stages
    mode: GenerationMode | None = None  # None: not an LLM stage
    max_tokens: int = 0

    @property
    def expects_json(self) -> bool:
        return self.artifact_ext == "json"

    @property
    def uses_llm(self) -> bool:
        return self.mode is not None


STAGE_DEFINITIONS: dict[StageId, StageDefinition] = {
    StageId.S1: StageDefinition(
        stage=StageId.S1,
        name="Client Survey Data",
        depends_on=frozenset(),
        artifact_ext="json",
        schema=SurveyData,
    ),
    StageId.S2: StageDefinition(
        stage=StageId.S2,
        name="Presentation Generator",
        depends_on=frozenset({StageId.S1}),
        artifact_ext="json",
        schema=PresentationData,
        mode=GenerationMode.SINGLE_SHOT,
        max_tokens=16000,
    ),
    StageId.S3: StageDefinition(
        stage=StageId.S3,
        name="Video Production Package",
        depends_on=frozenset({StageId.S1, StageId.S2}),
        artifact_ext="txt",
        mode=GenerationMode.STREAMING,
        max_tokens=32000,
    ),
    StageId.S4: StageDefinition(
        stage=StageId.S4,
        name="Assembly Instructions",
        depends_on=frozenset({StageId.S1, StageId.S2, StageId.S3}),
        artifact_ext="txt",
        mode=GenerationMode.STREAMING,
        max_tokens=16000,
    ),
    StageId.S5: StageDefinition(
        stage=StageId.S5,
        name="Stock Library Assets",
        depends_on=frozenset({StageId.S1, StageId.S2, StageId.S3, StageId.S4}),
        artifact_ext="json",
        schema=StockLibraryData,
        mode=GenerationMode.STREAMING,
        max_tokens=16000,
    ),
    StageId.S6: StageDefinition(
        stage=StageId.S6,
        name="Production Guide PDF",
        depends_on=frozenset({StageId.S3, StageId.S4, StageId.S5}),
        artifact_ext="pdf",
    ),
}

TERMINAL_STAGE = max(STAGE_DEFINITIONS, key=lambda s: s.ordinal)


def get_definition(stage: StageId) -> StageDefinition:
    return STAGE_DEFINITIONS[stage]


def resolve_stage(value: str) -> StageId:
    """Parse an operator-supplied stage name; unknown names are a ValidationError."""
    try:
        return StageId.parse(value)
    except ValueError as e:
        raise ValidationError(f"Invalid stage: {value}") from e


def dependencies(stage: StageId) -> list[StageId]:
    """Direct dependencies of ``stage`` in pipeline order."""
    return sorted(STAGE_DEFINITIONS[stage].depends_on)


# =============================================================================
# Derived graph
# =============================================================================


@lru_cache(maxsize=1)
def _dependents_map() -> dict[StageId, frozenset[StageId]]:
    """Reverse edges: stage -> stages that list it as a direct dependency."""
    reverse: dict[StageId, set[StageId]] = {stage: set() for stage in STAGE_DEFINITIONS}
    for definition in STAGE_DEFINITIONS.values():
        for dep in definition.depends_on:
            reverse[dep].add(definition.stage)
    return {stage: frozenset(deps) for stage, deps in reverse.items()}


@lru_cache(maxsize=None)
def downstream(stage: StageId) -> tuple[StageId, ...]:
    """Every stage that depends on ``stage`` directly or transitively, ordered."""
    reverse = _dependents_map()
    seen: set[StageId] = set()
    frontier = list(reverse[stage])
    while frontier:
        current = frontier.pop()
        if current in seen:
            continue
        seen.add(current)
        frontier.extend(reverse[current])
    return tuple(sorted(seen))


def clear_targets(stage: StageId) -> list[StageId]:
    """The stage itself followed by its whole downstream set."""
    return [stage, *downstream(stage)]


def missing_dependencies(stage: StageId, completed: Mapping[StageId, bool]) -> list[StageId]:
    """Dependencies of ``stage`` that are not marked completed."""
    return [dep for dep in dependencies(stage) if not completed.get(dep, False)]


def _validate_graph() -> None:
    for definition in STAGE_DEFINITIONS.values():
        for dep in definition.depends_on:
            if not dep < definition.stage:
                raise ValueError(
                    f"{definition.stage.label} depends on {dep.label}, which is not upstream"
                )
        if definition.expects_json and definition.schema is None:
            raise ValueError(f"{definition.stage.label} is JSON-shaped but has no schema")


_validate_graph()
