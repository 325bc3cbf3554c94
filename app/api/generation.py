"""Stateless stage generation: upstream payloads in, stage output out."""

import asyncio
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError as SchemaValidationError

from app.core.auth_middleware import OperatorContext, require_operator
from app.core.logging import get_logger
from app.core.pipeline_errors import NormalizationError, ValidationError
from app.core.pipeline_orchestrator import PipelineOrchestrator, get_orchestrator
from app.core.schemas_pipeline import GenerationMode, StageId
from app.core.stage_graph import dependencies, get_definition, resolve_stage
from app.core.stage_output import normalize_stage_output

logger = get_logger(__name__)

router = APIRouter()

_END_OF_STREAM = object()


def parse_upstream(stage: StageId, payload: dict[str, Any]) -> dict[StageId, Any]:
    """
    Pull every dependency's payload (``s1Data``, ``s2Data``, ...) out of the body.

    JSON-shaped payloads may arrive as objects or as (possibly fenced) JSON text.

    Raises:
        ValidationError: A required payload is missing or malformed
    """
    upstream: dict[StageId, Any] = {}
    for dep in dependencies(stage):
        value = payload.get(dep.data_key)
        if value is None or value == "":
            raise ValidationError(f"Missing required {dep.data_key}")

        definition = get_definition(dep)
        if definition.expects_json:
            try:
                if isinstance(value, str):
                    value = normalize_stage_output(value, dep).data
                else:
                    definition.schema.model_validate(value)
            except NormalizationError as e:
                raise ValidationError(f"Invalid {dep.data_key}: {e.message}") from e
            except SchemaValidationError as e:
                raise ValidationError(
                    f"Invalid {dep.data_key}: {e.error_count()} validation error(s)"
                ) from e
        elif not isinstance(value, str):
            raise ValidationError(f"{dep.data_key} must be text")

        upstream[dep] = value
    return upstream


async def stream_stage_text(
    orchestrator: PipelineOrchestrator,
    stage: StageId,
    upstream: dict[StageId, Any],
) -> StreamingResponse:
    """
    Stream a stage's text as it is generated.

    The first chunk is awaited before the response starts, so a provider
    failure before any output still produces an error response.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def produce() -> None:
        try:
            await orchestrator.run_llm_stage(stage, upstream, on_chunk=queue.put)
        except Exception as e:
            # Re-raised on the consumer side
            await queue.put(e)
        else:
            await queue.put(_END_OF_STREAM)

    task = asyncio.create_task(produce())
    first = await queue.get()
    if isinstance(first, Exception):
        raise first

    async def body() -> AsyncGenerator[str, None]:
        item = first
        try:
            while item is not _END_OF_STREAM:
                if isinstance(item, Exception):
                    logger.error(f"{stage.label} stream failed mid-response: {item}")
                    raise item
                yield item
                item = await queue.get()
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")


@router.post("/generate/{stage}")
async def generate_stage(
    stage: str,
    payload: dict[str, Any] = Body(...),
    operator: OperatorContext = Depends(require_operator),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Response:
    """
    Generate one stage from upstream payloads supplied in the request body.

    S2 answers ``{"s2Data": ...}``; S3-S5 stream plain text; S6 answers the PDF.
    """
    stage_id = resolve_stage(stage)
    if stage_id == StageId.S1:
        raise ValidationError("S1 is supplied by the client survey, not generated")

    upstream = parse_upstream(stage_id, payload)
    definition = get_definition(stage_id)
    logger.info(f"Stateless {stage_id.label} generation requested by {operator.operator_id}")

    if not definition.uses_llm:
        pdf_bytes = await orchestrator.assemble_guide(
            upstream, client_name=payload.get("clientName") or "Client"
        )
        return Response(
            content=pdf_bytes,
            media_type="application/pdf",
            headers={"Content-Disposition": 'attachment; filename="production-guide.pdf"'},
        )

    if definition.mode == GenerationMode.STREAMING:
        return await stream_stage_text(orchestrator, stage_id, upstream)

    normalized = await orchestrator.run_llm_stage(stage_id, upstream)
    return JSONResponse(content={stage_id.data_key: normalized.data})
