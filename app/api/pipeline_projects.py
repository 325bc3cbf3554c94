"""Project-bound pipeline routes: create projects, drive stages, read artifacts."""

from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError as SchemaValidationError

from app.core.auth_middleware import OperatorContext, require_operator
from app.core.logging import get_logger
from app.core.pipeline_errors import ValidationError
from app.core.pipeline_orchestrator import (
    PipelineOrchestrator,
    get_orchestrator,
    project_summary,
)
from app.core.schemas_pipeline import (
    ClearStageRequest,
    ClearStageResponse,
    CreatePipelineProjectRequest,
    PipelineProjectSummary,
    PipelineStateResponse,
    StageRecord,
    SurveyData,
    UploadStageRequest,
    UploadStageResponse,
)
from app.core.stage_graph import get_definition, resolve_stage

logger = get_logger(__name__)

router = APIRouter()


@router.post("", response_model=PipelineProjectSummary, status_code=status.HTTP_201_CREATED)
async def create_project(
    request: CreatePipelineProjectRequest,
    operator: OperatorContext = Depends(require_operator),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> PipelineProjectSummary:
    """Create a project with its S1 survey already completed."""
    try:
        SurveyData.model_validate(request.surveyData)
    except SchemaValidationError as e:
        raise ValidationError(f"Invalid surveyData: {e.error_count()} validation error(s)") from e

    project = orchestrator.store.create_project(
        project_name=request.projectName,
        client_name=request.clientName,
        survey_data=request.surveyData,
    )
    logger.info(f"Project {project['id']} created by {operator.operator_id}")
    return project_summary(project)


@router.get("", response_model=list[PipelineProjectSummary])
async def list_projects(
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> list[PipelineProjectSummary]:
    return [project_summary(project) for project in orchestrator.store.list_projects()]


@router.get("/{project_id}", response_model=PipelineProjectSummary)
async def get_project(
    project_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> PipelineProjectSummary:
    return project_summary(orchestrator.store.get_project(project_id))


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    operator: OperatorContext = Depends(require_operator),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    orchestrator.delete_project(project_id)
    logger.info(f"Project {project_id} deleted by {operator.operator_id}")
    return {"success": True}


@router.get("/{project_id}/pipeline", response_model=PipelineStateResponse)
async def get_pipeline(
    project_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> PipelineStateResponse:
    """Per-stage status, progress, error and artifact path."""
    return orchestrator.get_pipeline_state(project_id)


@router.post("/{project_id}/stages/{stage}/generate", response_model=StageRecord)
async def generate_project_stage(
    project_id: str,
    stage: str,
    operator: OperatorContext = Depends(require_operator),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> StageRecord:
    stage_id = resolve_stage(stage)
    logger.info(f"{stage_id.label} generation for {project_id} requested by {operator.operator_id}")
    return await orchestrator.request_stage(project_id, stage_id)


@router.get("/{project_id}/stages/{stage}/output")
async def get_stage_output(
    project_id: str,
    stage: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Download a completed stage's artifact in its native format."""
    stage_id = resolve_stage(stage)
    project = orchestrator.store.get_project(project_id)
    output = orchestrator.read_stage_output(project, stage_id)

    ext = get_definition(stage_id).artifact_ext
    if ext == "json":
        return JSONResponse(content={stage_id.data_key: output})
    if ext == "pdf":
        filename = f"{project.get('project_slug') or project_id}-production-guide.pdf"
        return Response(
            content=output,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return PlainTextResponse(content=output)


@router.post("/{project_id}/clear-stage", response_model=ClearStageResponse)
async def clear_stage(
    project_id: str,
    request: ClearStageRequest,
    operator: OperatorContext = Depends(require_operator),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> ClearStageResponse:
    """Reset a stage and everything downstream of it."""
    stage_id = resolve_stage(request.stage)
    cleared = orchestrator.clear_stage(project_id, stage_id)
    logger.info(f"{stage_id.label} cleared on {project_id} by {operator.operator_id}")
    return ClearStageResponse(cleared=cleared)


@router.post("/{project_id}/upload-stage", response_model=UploadStageResponse)
async def upload_stage(
    project_id: str,
    request: UploadStageRequest,
    operator: OperatorContext = Depends(require_operator),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> UploadStageResponse:
    """Accept operator-written output for an LLM stage."""
    stage_id = resolve_stage(request.stage)
    orchestrator.upload_custom_stage(project_id, stage_id, request.content)
    logger.info(f"{stage_id.label} uploaded on {project_id} by {operator.operator_id}")
    return UploadStageResponse()
