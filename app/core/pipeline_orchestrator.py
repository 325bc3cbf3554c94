"""Pipeline orchestrator: the S1-S6 stage state machine.

Stage status is derived, never stored directly:
- ``completed``: the project row's ``sN_completed`` flag
- ``generating`` / ``error``: this process's runtime registry
- otherwise ``ready`` when every dependency is completed, else ``locked``

Every transition goes through this class. The prompt builder, generation
client and normalizer are pure collaborators that never touch stage records.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from app.core.config import get_settings
from app.core.document_assembler import DocumentSection, assemble_document_async
from app.core.llm import GenerationClient, get_generation_client
from app.core.llm_usage import log_llm_usage
from app.core.logging import get_logger, log_with_context
from app.core.pipeline_errors import (
    ConcurrentGenerationError,
    DependencyNotReadyError,
    InvalidStateError,
    NormalizationError,
    PipelineError,
    ValidationError,
)
from app.core.schemas_pipeline import (
    PipelineProjectSummary,
    PipelineStateResponse,
    StageId,
    StageRecord,
    StageStatus,
)
from app.core.stage_graph import (
    STAGE_DEFINITIONS,
    TERMINAL_STAGE,
    clear_targets,
    dependencies,
    get_definition,
    missing_dependencies,
)
from app.core.stage_output import (
    NormalizedOutput,
    normalize_stage_output,
    render_stock_library_text,
)
from app.core.stage_prompts import build_stage_prompt

logger = get_logger(__name__)

GUIDE_TITLE = "Video Production Guide"
START_PROGRESS = 10
MAX_STREAM_PROGRESS = 95
CHARS_PER_PERCENT = 500

ChunkCallback = Callable[[str], Awaitable[None] | None]
ProgressCallback = Callable[[int], None]


def stream_progress(accumulated_chars: int) -> int:
    """Progress for a streamed stage after ``accumulated_chars`` of output."""
    return int(min(START_PROGRESS + accumulated_chars / CHARS_PER_PERCENT, MAX_STREAM_PROGRESS))


@dataclass
class _RuntimeState:
    status: StageStatus
    progress: int = 0
    error: str | None = None


async def _maybe_await(outcome: Any) -> None:
    if inspect.isawaitable(outcome):
        await outcome


class PipelineOrchestrator:
    """Drives stage generation, clearing and custom uploads for projects."""

    def __init__(
        self,
        store: Any = None,
        generator: GenerationClient | None = None,
        usage_logger: Callable[..., None] = log_llm_usage,
    ):
        if store is None:
            from app.db import pipeline_projects

            store = pipeline_projects
        self.store = store
        self._generator = generator
        self._usage_logger = usage_logger
        self._runtime: dict[tuple[str, StageId], _RuntimeState] = {}

    @property
    def generator(self) -> GenerationClient:
        if self._generator is None:
            self._generator = get_generation_client()
        return self._generator

    # =========================================================================
    # Status
    # =========================================================================

    @staticmethod
    def completed_map(project: dict[str, Any]) -> dict[StageId, bool]:
        return {stage: bool(project.get(f"{stage.value}_completed")) for stage in STAGE_DEFINITIONS}

    def stage_status(self, project: dict[str, Any], stage: StageId) -> StageStatus:
        completed = self.completed_map(project)
        if completed[stage]:
            return StageStatus.COMPLETED
        runtime = self._runtime.get((str(project["id"]), stage))
        if runtime and runtime.status == StageStatus.GENERATING:
            return StageStatus.GENERATING
        if missing_dependencies(stage, completed):
            return StageStatus.LOCKED
        if runtime and runtime.status == StageStatus.ERROR:
            return StageStatus.ERROR
        return StageStatus.READY

    def progress(self, project_id: str, stage: StageId) -> int:
        """Current progress of an in-flight (or failed) generation; 0 when idle."""
        runtime = self._runtime.get((str(project_id), stage))
        return runtime.progress if runtime else 0

    def _record(self, project: dict[str, Any], stage: StageId, output: Any = None) -> StageRecord:
        status = self.stage_status(project, stage)
        runtime = self._runtime.get((str(project["id"]), stage))
        if status == StageStatus.COMPLETED:
            progress = 100
        elif status in (StageStatus.GENERATING, StageStatus.ERROR) and runtime:
            progress = runtime.progress
        else:
            progress = 0
        return StageRecord(
            stage=stage,
            status=status,
            file_path=project.get(f"{stage.value}_file_path") if status == StageStatus.COMPLETED else None,
            generated_at=project.get(f"{stage.value}_generated_at") if status == StageStatus.COMPLETED else None,
            error=runtime.error if runtime and status == StageStatus.ERROR else None,
            progress=progress,
            output=output if status == StageStatus.COMPLETED else None,
        )

    def get_stage_records(self, project_id: str) -> list[StageRecord]:
        project = self.store.get_project(project_id)
        return [self._record(project, stage) for stage in sorted(STAGE_DEFINITIONS)]

    def get_pipeline_state(self, project_id: str) -> PipelineStateResponse:
        project = self.store.get_project(project_id)
        return PipelineStateResponse(
            project=project_summary(project),
            stages=[self._record(project, stage) for stage in sorted(STAGE_DEFINITIONS)],
        )

    # =========================================================================
    # Artifacts
    # =========================================================================

    def read_stage_output(self, project: dict[str, Any], stage: StageId) -> Any:
        """Load a completed stage's artifact: parsed JSON, text or PDF bytes."""
        path = project.get(f"{stage.value}_file_path")
        if not project.get(f"{stage.value}_completed") or not path:
            raise InvalidStateError(f"{stage.label} has no completed output")

        raw = self.store.download_stage_file(path)
        ext = get_definition(stage).artifact_ext
        if ext == "pdf":
            return raw
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        return json.loads(text) if ext == "json" else text

    def _gather_upstream(self, project: dict[str, Any], stage: StageId) -> dict[StageId, Any]:
        missing = missing_dependencies(stage, self.completed_map(project))
        if missing:
            raise DependencyNotReadyError(
                f"{stage.label} requires {', '.join(dep.label for dep in missing)} to be completed"
            )
        return {dep: self.read_stage_output(project, dep) for dep in dependencies(stage)}

    # =========================================================================
    # Generation
    # =========================================================================

    async def run_llm_stage(
        self,
        stage: StageId,
        upstream: dict[StageId, Any],
        on_chunk: ChunkCallback | None = None,
        on_progress: ProgressCallback | None = None,
        project_id: str | None = None,
    ) -> NormalizedOutput:
        """Prompt -> generate -> normalize for one LLM stage. Touches no records."""
        definition = get_definition(stage)
        prompt = build_stage_prompt(stage, upstream)
        received = 0

        async def handle_chunk(chunk: str) -> None:
            nonlocal received
            received += len(chunk)
            if on_progress is not None:
                on_progress(stream_progress(received))
            if on_chunk is not None:
                await _maybe_await(on_chunk(chunk))

        result = await self.generator.generate(
            prompt,
            definition.mode,
            definition.max_tokens,
            on_chunk=handle_chunk,
        )

        self._usage_logger(
            stage=stage.value,
            model=self.generator.model,
            tokens_input=result.input_tokens,
            tokens_output=result.output_tokens,
            duration_ms=result.duration_ms,
            project_id=project_id,
        )
        return normalize_stage_output(result.text, stage)

    async def assemble_guide(
        self,
        upstream: dict[StageId, Any],
        client_name: str,
    ) -> bytes:
        """Typeset S3, S4 and the rendered S5 library into the production guide PDF."""
        sections = [
            DocumentSection(get_definition(StageId.S3).name, upstream.get(StageId.S3)),
            DocumentSection(get_definition(StageId.S4).name, upstream.get(StageId.S4)),
            DocumentSection(
                get_definition(StageId.S5).name,
                render_stock_library_text(upstream[StageId.S5]) if upstream.get(StageId.S5) else None,
            ),
        ]
        return await assemble_document_async(
            sections,
            title=GUIDE_TITLE,
            client_name=client_name,
            studio_name=get_settings().STUDIO_NAME,
        )

    async def request_stage(
        self,
        project_id: str,
        stage: StageId,
        on_chunk: ChunkCallback | None = None,
    ) -> StageRecord:
        """
        Generate ``stage`` for a project and persist the result.

        Args:
            project_id: Project UUID
            stage: S2-S6
            on_chunk: Observer for streamed text deltas

        Returns:
            The completed StageRecord

        Raises:
            InvalidStateError: S1, or the stage is already completed
            DependencyNotReadyError: The stage is locked
            ConcurrentGenerationError: The stage is already generating
            GenerationError / NormalizationError / StorageError: The attempt failed;
                the stage is left in ``error``
        """
        key = (str(project_id), stage)
        project = self.store.get_project(project_id)

        # No awaits between the status check and claiming the stage
        self._check_can_start(project, stage)
        runtime = _RuntimeState(status=StageStatus.GENERATING, progress=START_PROGRESS)
        self._runtime[key] = runtime
        log_with_context(logger, logging.INFO, "Stage generation started", project_id=key[0], stage=stage.value)

        def advance(value: int) -> None:
            runtime.progress = max(runtime.progress, value)

        try:
            upstream = self._gather_upstream(project, stage)
            definition = get_definition(stage)

            if definition.uses_llm:
                normalized = await self.run_llm_stage(
                    stage, upstream, on_chunk=on_chunk, on_progress=advance, project_id=key[0]
                )
                artifact: str | bytes = normalized.text
                output: Any = normalized.data if definition.expects_json else normalized.text
            else:
                advance(50)
                artifact = await self.assemble_guide(upstream, project.get("client_name") or "Client")
                output = None

            self._persist(project, stage, artifact)

        except asyncio.CancelledError:
            self._fail(key, runtime, "Generation cancelled")
            raise
        except PipelineError as e:
            self._fail(key, runtime, e.message)
            raise
        except Exception as e:
            self._fail(key, runtime, f"Unexpected failure: {e}")
            raise

        self._runtime.pop(key, None)
        log_with_context(logger, logging.INFO, "Stage completed", project_id=key[0], stage=stage.value)
        return self._record(self.store.get_project(project_id), stage, output=output)

    def _check_can_start(self, project: dict[str, Any], stage: StageId) -> None:
        if stage == StageId.S1:
            raise InvalidStateError("S1 is supplied at project creation and cannot be generated")

        status = self.stage_status(project, stage)
        if status == StageStatus.COMPLETED:
            raise InvalidStateError(f"{stage.label} is already completed; clear it first")
        if status == StageStatus.GENERATING:
            raise ConcurrentGenerationError(f"{stage.label} is already generating")
        if status == StageStatus.LOCKED:
            missing = missing_dependencies(stage, self.completed_map(project))
            raise DependencyNotReadyError(
                f"{stage.label} requires {', '.join(dep.label for dep in missing)} to be completed"
            )

    def _fail(self, key: tuple[str, StageId], runtime: _RuntimeState, message: str) -> None:
        runtime.status = StageStatus.ERROR
        runtime.error = message
        self._runtime[key] = runtime
        log_with_context(
            logger, logging.ERROR, f"Stage failed: {message}", project_id=key[0], stage=key[1].value
        )

    def _persist(self, project: dict[str, Any], stage: StageId, artifact: str | bytes) -> None:
        project_id = str(project["id"])
        path = self.store.upload_stage_file(project_id, stage, artifact)

        next_stage = min(stage.ordinal + 1, TERMINAL_STAGE.ordinal)
        current_stage = max(int(project.get("current_stage") or 1), next_stage)
        completed = self.completed_map(project)
        completed[stage] = True
        project_status = "completed" if completed[TERMINAL_STAGE] else "in_progress"

        try:
            self.store.mark_stage_completed(project_id, stage, path, current_stage, project_status)
        except Exception:
            # No row points at the blob, so nothing else would ever remove it
            self.store.remove_stage_files([path])
            raise

    # =========================================================================
    # Clear / upload
    # =========================================================================

    def clear_stage(self, project_id: str, stage: StageId) -> list[str]:
        """
        Reset ``stage`` and everything downstream of it.

        Returns:
            The reset column names

        Raises:
            InvalidStateError: S1 cannot be cleared
            ConcurrentGenerationError: A target stage is generating
        """
        if stage == StageId.S1:
            raise InvalidStateError("S1 cannot be cleared; create a new project instead")

        targets = clear_targets(stage)
        busy = [
            target.label
            for target in targets
            if (runtime := self._runtime.get((str(project_id), target)))
            and runtime.status == StageStatus.GENERATING
        ]
        if busy:
            raise ConcurrentGenerationError(f"Cannot clear while generating: {', '.join(busy)}")

        project = self.store.get_project(project_id)
        paths = [
            project[f"{target.value}_file_path"]
            for target in targets
            if project.get(f"{target.value}_file_path")
        ]
        current_stage = min(int(project.get("current_stage") or stage.ordinal), stage.ordinal)

        cleared = self.store.clear_stages(project_id, targets, current_stage)
        self.store.remove_stage_files(paths)
        for target in targets:
            self._runtime.pop((str(project_id), target), None)

        log_with_context(
            logger,
            logging.INFO,
            f"Cleared {', '.join(t.label for t in targets)}",
            project_id=str(project_id),
            stage=stage.value,
        )
        return cleared

    def upload_custom_stage(self, project_id: str, stage: StageId, content: str) -> StageRecord:
        """
        Accept operator-supplied output for an LLM stage in place of generation.

        Raises:
            ValidationError: Not an uploadable stage, or the content fails normalization
            InvalidStateError / DependencyNotReadyError / ConcurrentGenerationError:
                The stage is not ``ready`` or ``error``
        """
        if not get_definition(stage).uses_llm:
            raise ValidationError(f"{stage.label} output cannot be uploaded")

        project = self.store.get_project(project_id)
        self._check_can_start(project, stage)

        try:
            normalized = normalize_stage_output(content, stage)
        except NormalizationError as e:
            raise ValidationError(f"Invalid {stage.label} content: {e.message}") from e

        self._persist(project, stage, normalized.text)
        self._runtime.pop((str(project_id), stage), None)
        log_with_context(logger, logging.INFO, "Custom output uploaded", project_id=str(project_id), stage=stage.value)

        output = normalized.data if get_definition(stage).expects_json else normalized.text
        return self._record(self.store.get_project(project_id), stage, output=output)

    def delete_project(self, project_id: str) -> None:
        """Delete a project and its artifacts unless a stage is generating."""
        busy = [
            stage.label
            for (pid, stage), runtime in self._runtime.items()
            if pid == str(project_id) and runtime.status == StageStatus.GENERATING
        ]
        if busy:
            raise ConcurrentGenerationError(f"Cannot delete while generating: {', '.join(busy)}")

        self.store.delete_project(project_id)
        for key in [key for key in self._runtime if key[0] == str(project_id)]:
            del self._runtime[key]


def project_summary(project: dict[str, Any]) -> PipelineProjectSummary:
    return PipelineProjectSummary(
        id=str(project["id"]),
        projectName=project.get("project_name") or "",
        clientName=project.get("client_name") or "",
        status=project.get("status") or "in_progress",
        currentStage=int(project.get("current_stage") or 1),
        createdAt=project.get("created_at"),
        updatedAt=project.get("updated_at"),
    )


_orchestrator: PipelineOrchestrator | None = None


def get_orchestrator() -> PipelineOrchestrator:
    """Process-wide orchestrator (owns the runtime status registry)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator()
    return _orchestrator
