"""Tests for the pipeline orchestrator state machine.

Uses the in-memory FakeProjectStore and scripted provider replies; nothing
touches Supabase or Anthropic.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from anthropic import InternalServerError

from app.core.llm import GenerationResult
from app.core.pipeline_errors import (
    ConcurrentGenerationError,
    DependencyNotReadyError,
    GenerationError,
    InvalidStateError,
    NormalizationError,
    StorageError,
    ValidationError,
)
from app.core.pipeline_orchestrator import PipelineOrchestrator, stream_progress
from app.core.schemas_pipeline import PresentationData, StageId, StageStatus
from tests.fakes.fake_anthropic import status_error
from tests.fakes.fake_store import SAMPLE_PRESENTATION, SAMPLE_STOCK_LIBRARY

S1, S2, S3, S4, S5, S6 = StageId.S1, StageId.S2, StageId.S3, StageId.S4, StageId.S5, StageId.S6


class GatedGenerator:
    """Generator that blocks until ``gate`` is set, then streams ``chunks``."""

    model = "claude-sonnet-4-20250514"

    def __init__(self, chunks: list[str]):
        self.gate = asyncio.Event()
        self.chunks = chunks
        self.calls = 0

    async def generate(self, prompt, mode, max_tokens, on_chunk=None):
        self.calls += 1
        await self.gate.wait()
        for chunk in self.chunks:
            if on_chunk is not None:
                await on_chunk(chunk)
        return GenerationResult(text="".join(self.chunks))


def statuses(orchestrator: PipelineOrchestrator, project_id: str) -> dict[StageId, StageStatus]:
    return {r.stage: r.status for r in orchestrator.get_stage_records(project_id)}


# =============================================================================
# Status derivation
# =============================================================================


class TestStatus:
    def test_new_project(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project()

        assert statuses(orchestrator, project_id) == {
            S1: StageStatus.COMPLETED,
            S2: StageStatus.READY,
            S3: StageStatus.LOCKED,
            S4: StageStatus.LOCKED,
            S5: StageStatus.LOCKED,
            S6: StageStatus.LOCKED,
        }

    def test_guide_ready_once_production_stages_complete(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S5)

        assert statuses(orchestrator, project_id)[S6] == StageStatus.READY

    def test_pipeline_state_summary(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S2)

        state = orchestrator.get_pipeline_state(project_id)

        assert state.project.projectName == "Acme Fitness Brand Video"
        assert state.project.status == "in_progress"
        assert [r.stage for r in state.stages] == [S1, S2, S3, S4, S5, S6]
        assert state.stages[1].file_path.endswith("s2-output.json")


# =============================================================================
# requestStage
# =============================================================================


class TestRequestStage:
    @pytest.mark.asyncio
    async def test_presentation_requires_survey_then_succeeds(self, store, make_orchestrator):
        """S2 before S1 exists is rejected; once S1 exists S2 completes with valid JSON."""
        orchestrator = make_orchestrator(f"```json\n{json.dumps(SAMPLE_PRESENTATION)}\n```")
        project_id = store.seed_project()
        store.rows[project_id]["s1_completed"] = False

        with pytest.raises(DependencyNotReadyError):
            await orchestrator.request_stage(project_id, S2)
        assert orchestrator.generator._client.messages.calls == []

        store.rows[project_id]["s1_completed"] = True
        record = await orchestrator.request_stage(project_id, S2)

        assert record.status == StageStatus.COMPLETED
        assert record.progress == 100
        PresentationData.model_validate(record.output)
        stored = json.loads(store.blobs[f"{project_id}/s2-output.json"])
        assert stored == SAMPLE_PRESENTATION

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", [S3, S4, S5, S6])
    async def test_locked_stages_rejected_before_any_call(self, store, make_orchestrator, stage):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project()

        with pytest.raises(DependencyNotReadyError):
            await orchestrator.request_stage(project_id, stage)

        assert orchestrator.generator._client.messages.calls == []
        assert statuses(orchestrator, project_id)[stage] == StageStatus.LOCKED

    @pytest.mark.asyncio
    async def test_guide_needs_assembly_even_with_stock_library(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S5)
        store.rows[project_id]["s4_completed"] = False

        with pytest.raises(DependencyNotReadyError, match="S4"):
            await orchestrator.request_stage(project_id, S6)

    @pytest.mark.asyncio
    async def test_streamed_stage_progress(self, store, make_orchestrator):
        orchestrator = make_orchestrator(["Seg", "ment 1: Intro"])
        project_id = store.seed_project(through=S2)
        observed: list[int] = []

        async def on_chunk(chunk):
            observed.append(orchestrator.progress(project_id, S3))
            assert statuses(orchestrator, project_id)[S3] == StageStatus.GENERATING

        record = await orchestrator.request_stage(project_id, S3, on_chunk=on_chunk)

        assert record.output == "Segment 1: Intro"
        assert store.blobs[f"{project_id}/s3-output.txt"] == b"Segment 1: Intro"
        assert observed and all(10 <= p <= 95 for p in observed)
        assert record.progress == 100

    @pytest.mark.asyncio
    async def test_progress_increases_monotonically(self, store, make_orchestrator):
        orchestrator = make_orchestrator(["x" * 600] * 5)
        project_id = store.seed_project(through=S2)
        observed: list[int] = []

        await orchestrator.request_stage(
            project_id, S3, on_chunk=lambda _: observed.append(orchestrator.progress(project_id, S3))
        )

        assert observed == [11, 12, 13, 14, 16]
        assert observed == sorted(observed)

    def test_progress_formula_caps_at_95(self):
        assert stream_progress(0) == 10
        assert stream_progress(500) == 11
        assert stream_progress(10_000_000) == 95

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_error_then_retry_succeeds(self, store, make_orchestrator):
        """Three HTTP 500s end in error with nothing persisted; a retry then completes."""
        error = status_error(InternalServerError, 500)
        orchestrator = make_orchestrator(error, error, error, ["SEGMENT 1: Intro"])
        project_id = store.seed_project(through=S2)

        with pytest.raises(GenerationError):
            await orchestrator.request_stage(project_id, S3)

        record = orchestrator.get_stage_records(project_id)[2]
        assert record.status == StageStatus.ERROR
        assert "Generation failed" in record.error
        assert record.output is None
        assert f"{project_id}/s3-output.txt" not in store.blobs
        assert store.rows[project_id]["s3_completed"] is False

        record = await orchestrator.request_stage(project_id, S3)
        assert record.status == StageStatus.COMPLETED
        assert record.error is None

    @pytest.mark.asyncio
    async def test_invalid_json_is_normalization_error(self, store, make_orchestrator):
        orchestrator = make_orchestrator("Here is your presentation: {broken")
        project_id = store.seed_project()

        with pytest.raises(NormalizationError) as exc_info:
            await orchestrator.request_stage(project_id, S2)

        assert exc_info.value.raw_text == "Here is your presentation: {broken"
        assert statuses(orchestrator, project_id)[S2] == StageStatus.ERROR
        assert f"{project_id}/s2-output.json" not in store.blobs

    @pytest.mark.asyncio
    async def test_storage_failure_is_stage_error(self, store, make_orchestrator):
        orchestrator = make_orchestrator(["text"])
        project_id = store.seed_project(through=S2)
        store.fail_uploads = True

        with pytest.raises(StorageError):
            await orchestrator.request_stage(project_id, S3)

        assert statuses(orchestrator, project_id)[S3] == StageStatus.ERROR

    @pytest.mark.asyncio
    async def test_failed_row_update_removes_uploaded_artifact(self, store, make_orchestrator):
        orchestrator = make_orchestrator(["SEGMENT 1: Intro"])
        project_id = store.seed_project(through=S2)
        store.fail_row_updates = True

        with pytest.raises(StorageError):
            await orchestrator.request_stage(project_id, S3)

        assert f"{project_id}/s3-output.txt" not in store.blobs
        assert store.rows[project_id]["s3_completed"] is False
        assert statuses(orchestrator, project_id)[S3] == StageStatus.ERROR

    @pytest.mark.asyncio
    async def test_completed_and_survey_stages_rejected(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S2)

        with pytest.raises(InvalidStateError):
            await orchestrator.request_stage(project_id, S2)
        with pytest.raises(InvalidStateError):
            await orchestrator.request_stage(project_id, S1)

    @pytest.mark.asyncio
    async def test_completion_advances_project(self, store, make_orchestrator, usage_log):
        orchestrator = make_orchestrator(["ASSEMBLY INSTRUCTIONS\n", "LAYER 1: Video"])
        project_id = store.seed_project(through=S3)

        await orchestrator.request_stage(project_id, S4)

        assert store.rows[project_id]["current_stage"] == 5
        assert store.rows[project_id]["status"] == "in_progress"
        assert usage_log[-1]["stage"] == "s4"
        assert usage_log[-1]["project_id"] == project_id

    @pytest.mark.asyncio
    async def test_guide_assembles_pdf_and_completes_project(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S5)

        record = await orchestrator.request_stage(project_id, S6)

        assert record.status == StageStatus.COMPLETED
        assert store.blobs[f"{project_id}/s6-output.pdf"].startswith(b"%PDF")
        assert store.rows[project_id]["status"] == "completed"
        assert orchestrator.generator._client.messages.calls == []

    @pytest.mark.asyncio
    async def test_guide_renders_off_the_event_loop(self, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        upstream = {S3: "SEGMENT 1: Intro", S4: "LAYER 1: Video", S5: SAMPLE_STOCK_LIBRARY}

        with patch(
            "app.core.pipeline_orchestrator.assemble_document_async",
            new_callable=AsyncMock,
            return_value=b"%PDF-1.7",
        ) as mock_assemble:
            pdf_bytes = await orchestrator.assemble_guide(upstream, client_name="Acme Fitness")

        assert pdf_bytes == b"%PDF-1.7"
        sections = mock_assemble.await_args.args[0]
        assert [s.text for s in sections[:2]] == ["SEGMENT 1: Intro", "LAYER 1: Video"]
        assert mock_assemble.await_args.kwargs["client_name"] == "Acme Fitness"


# =============================================================================
# Concurrency and cancellation
# =============================================================================


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_second_request_rejected_while_generating(self, store, usage_log):
        generator = GatedGenerator(["SEGMENT 1: Intro"])
        orchestrator = PipelineOrchestrator(
            store=store, generator=generator, usage_logger=lambda **row: usage_log.append(row)
        )
        project_id = store.seed_project(through=S2)

        async def release():
            await asyncio.sleep(0)
            generator.gate.set()

        results = await asyncio.gather(
            orchestrator.request_stage(project_id, S3),
            orchestrator.request_stage(project_id, S3),
            release(),
            return_exceptions=True,
        )

        outcomes = results[:2]
        assert sum(isinstance(r, ConcurrentGenerationError) for r in outcomes) == 1
        assert sum(getattr(r, "status", None) == StageStatus.COMPLETED for r in outcomes) == 1
        assert generator.calls == 1

    @pytest.mark.asyncio
    async def test_clear_rejected_while_downstream_generating(self, store, usage_log):
        generator = GatedGenerator(["LAYER 1"])
        orchestrator = PipelineOrchestrator(
            store=store, generator=generator, usage_logger=lambda **row: usage_log.append(row)
        )
        project_id = store.seed_project(through=S3)

        task = asyncio.create_task(orchestrator.request_stage(project_id, S4))
        await asyncio.sleep(0)

        with pytest.raises(ConcurrentGenerationError):
            orchestrator.clear_stage(project_id, S3)

        generator.gate.set()
        await task

    @pytest.mark.asyncio
    async def test_cancellation_leaves_error_and_persists_nothing(self, store, usage_log):
        generator = GatedGenerator(["never delivered"])
        orchestrator = PipelineOrchestrator(
            store=store, generator=generator, usage_logger=lambda **row: usage_log.append(row)
        )
        project_id = store.seed_project(through=S2)

        task = asyncio.create_task(orchestrator.request_stage(project_id, S3))
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        record = orchestrator.get_stage_records(project_id)[2]
        assert record.status == StageStatus.ERROR
        assert record.error == "Generation cancelled"
        assert f"{project_id}/s3-output.txt" not in store.blobs


# =============================================================================
# clearStage
# =============================================================================


class TestClearStage:
    def _fully_completed(self, store) -> str:
        project_id = store.seed_project(through=S5)
        store.complete_stage(project_id, S6, b"%PDF-1.7 fake")
        return project_id

    def test_clearing_production_package_cascades(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S5)
        s2_before = dict(store.rows[project_id])

        cleared = orchestrator.clear_stage(project_id, S3)

        state = statuses(orchestrator, project_id)
        assert state[S1] == state[S2] == StageStatus.COMPLETED
        assert state[S3] == StageStatus.READY
        assert state[S4] == state[S5] == StageStatus.LOCKED
        assert "s3_completed" in cleared and "s5_file_path" in cleared
        assert store.rows[project_id]["s2_generated_at"] == s2_before["s2_generated_at"]
        assert not any(path.endswith(("s3-output.txt", "s4-output.txt", "s5-output.json")) for path in store.blobs)

    @pytest.mark.parametrize("stage", [S2, S3, S4, S5, S6])
    def test_clear_resets_stage_and_everything_after(self, store, make_orchestrator, stage):
        orchestrator = make_orchestrator("unused")
        project_id = self._fully_completed(store)
        before = dict(store.rows[project_id])

        orchestrator.clear_stage(project_id, stage)

        records = {r.stage: r for r in orchestrator.get_stage_records(project_id)}
        for other, record in records.items():
            if other.ordinal >= stage.ordinal:
                assert record.status in (StageStatus.LOCKED, StageStatus.READY)
                assert record.file_path is None
                assert store.rows[project_id][f"{other.value}_file_path"] is None
            else:
                assert record.status == StageStatus.COMPLETED
                assert store.rows[project_id][f"{other.value}_file_path"] == before[f"{other.value}_file_path"]
        assert store.rows[project_id]["status"] == "in_progress"
        assert store.rows[project_id]["current_stage"] == stage.ordinal

    def test_clear_never_generated_stages(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S2)

        cleared = orchestrator.clear_stage(project_id, S2)

        assert cleared[:3] == ["s2_completed", "s2_file_path", "s2_generated_at"]
        assert "s6_completed" in cleared

    def test_survey_cannot_be_cleared(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project()

        with pytest.raises(InvalidStateError):
            orchestrator.clear_stage(project_id, S1)

    @pytest.mark.asyncio
    async def test_clear_discards_previous_error(self, store, make_orchestrator):
        orchestrator = make_orchestrator("not json")
        project_id = store.seed_project()

        with pytest.raises(NormalizationError):
            await orchestrator.request_stage(project_id, S2)
        assert statuses(orchestrator, project_id)[S2] == StageStatus.ERROR

        orchestrator.clear_stage(project_id, S2)
        record = orchestrator.get_stage_records(project_id)[1]
        assert record.status == StageStatus.READY
        assert record.error is None


# =============================================================================
# uploadCustomStage
# =============================================================================


class TestUploadCustomStage:
    def test_fenced_json_upload_completes_stage(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project()

        record = orchestrator.upload_custom_stage(
            project_id, S2, f"```json\n{json.dumps(SAMPLE_PRESENTATION)}\n```"
        )

        assert record.status == StageStatus.COMPLETED
        assert record.output == SAMPLE_PRESENTATION
        assert statuses(orchestrator, project_id)[S3] == StageStatus.READY

    def test_invalid_json_rejected(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S4)

        with pytest.raises(ValidationError):
            orchestrator.upload_custom_stage(project_id, S5, "{ not json")

        assert statuses(orchestrator, project_id)[S5] == StageStatus.READY

    def test_text_upload(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S2)

        orchestrator.upload_custom_stage(project_id, S3, "SEGMENT 1: Custom\n")

        assert store.blobs[f"{project_id}/s3-output.txt"] == b"SEGMENT 1: Custom\n"

    def test_json_stock_library_upload(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S4)

        orchestrator.upload_custom_stage(project_id, S5, json.dumps(SAMPLE_STOCK_LIBRARY))

        assert statuses(orchestrator, project_id)[S6] == StageStatus.READY

    def test_failed_row_update_keeps_no_upload(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S2)
        store.fail_row_updates = True

        with pytest.raises(StorageError):
            orchestrator.upload_custom_stage(project_id, S3, "SEGMENT 1: Custom")

        assert f"{project_id}/s3-output.txt" not in store.blobs
        assert statuses(orchestrator, project_id)[S3] == StageStatus.READY

    @pytest.mark.parametrize(
        "stage,through,error",
        [
            (S2, S2, InvalidStateError),
            (S4, S2, DependencyNotReadyError),
            (S6, S5, ValidationError),
            (S1, S1, ValidationError),
        ],
    )
    def test_rejections(self, store, make_orchestrator, stage, through, error):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=through)

        with pytest.raises(error):
            orchestrator.upload_custom_stage(project_id, stage, "SEGMENT 1")


class TestDeleteProject:
    def test_delete_removes_rows_and_blobs(self, store, make_orchestrator):
        orchestrator = make_orchestrator("unused")
        project_id = store.seed_project(through=S3)

        orchestrator.delete_project(project_id)

        assert project_id not in store.rows
        assert not any(path.startswith(project_id) for path in store.blobs)
