"""Pipeline project persistence: one table row per project, one blob per stage.

Row columns per stage: ``sN_completed``, ``sN_file_path``, ``sN_generated_at``.
Blobs live at ``{project_id}/s1-survey.json`` and ``{project_id}/sN-output.{ext}``.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from app.core.logging import get_logger
from app.core.pipeline_errors import ProjectNotFoundError, StorageError
from app.core.schemas_pipeline import StageId
from app.core.stage_graph import STAGE_DEFINITIONS, get_definition
from app.db.supabase_client import get_bucket, get_projects_table

logger = get_logger(__name__)

CONTENT_TYPES = {
    "json": "application/json",
    "txt": "text/plain; charset=utf-8",
    "pdf": "application/pdf",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def slugify(name: str) -> str:
    """``"Acme Fitness Launch!"`` -> ``"acme-fitness-launch"``."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def stage_columns(stage: StageId) -> list[str]:
    """Row columns holding ``stage``'s completion state."""
    return [f"{stage.value}_completed", f"{stage.value}_file_path", f"{stage.value}_generated_at"]


def stage_file_path(project_id: UUID | str, stage: StageId) -> str:
    """Deterministic blob path for ``stage``'s artifact."""
    if stage == StageId.S1:
        return f"{project_id}/s1-survey.json"
    return f"{project_id}/{stage.value}-output.{get_definition(stage).artifact_ext}"


# =============================================================================
# Blob storage
# =============================================================================


def upload_stage_file(project_id: UUID | str, stage: StageId, content: str | bytes) -> str:
    """
    Upload (upsert) a stage artifact to its deterministic path.

    Returns:
        Storage path of the uploaded artifact

    Raises:
        StorageError: If the upload fails
    """
    path = stage_file_path(project_id, stage)
    body = content.encode("utf-8") if isinstance(content, str) else content
    ext = get_definition(stage).artifact_ext

    try:
        get_bucket().upload(
            path=path,
            file=body,
            file_options={"content-type": CONTENT_TYPES[ext], "upsert": "true"},
        )
    except Exception as e:
        logger.error(f"Failed to upload {path}: {e}", extra={"project_id": str(project_id)})
        raise StorageError(f"Failed to store {stage.label} output: {e}") from e

    logger.info(f"Uploaded {len(body)} bytes to {path}", extra={"project_id": str(project_id)})
    return path


def download_stage_file(path: str) -> bytes:
    """
    Fetch an artifact's bytes.

    Raises:
        StorageError: If the download fails
    """
    try:
        return get_bucket().download(path)
    except Exception as e:
        logger.error(f"Failed to download {path}: {e}")
        raise StorageError(f"Failed to read {path}: {e}") from e


def remove_stage_files(paths: list[str]) -> None:
    """Delete artifacts; failures are logged, not raised."""
    if not paths:
        return
    try:
        get_bucket().remove(paths)
    except Exception as e:
        logger.warning(f"Failed to delete files from storage: {e}")


# =============================================================================
# Project rows
# =============================================================================


def create_project(
    project_name: str,
    client_name: str,
    survey_data: dict[str, Any],
) -> dict[str, Any]:
    """
    Create a project with S1 already completed.

    The survey is uploaded first so the row never references a missing blob.

    Raises:
        StorageError: If the upload or insert fails
    """
    project_id = str(uuid4())
    survey_json = json.dumps(survey_data, indent=2, ensure_ascii=False)
    survey_path = upload_stage_file(project_id, StageId.S1, survey_json)

    now = _now()
    row: dict[str, Any] = {
        "id": project_id,
        "project_name": project_name,
        "client_name": client_name,
        "project_slug": slugify(project_name),
        "current_stage": 2,
        "status": "in_progress",
        "s1_completed": True,
        "s1_file_path": survey_path,
        "s1_generated_at": now,
        "created_at": now,
        "updated_at": now,
    }
    for stage in STAGE_DEFINITIONS:
        if stage != StageId.S1:
            row[f"{stage.value}_completed"] = False

    try:
        response = get_projects_table().insert(row).execute()
    except Exception as e:
        remove_stage_files([survey_path])
        logger.error(f"Failed to create project {project_name}: {e}")
        raise StorageError(f"Failed to create project: {e}") from e

    project = response.data[0] if response.data else row
    logger.info(f"Created project {project_id}: {project_name}", extra={"project_id": project_id})
    return project


def get_project(project_id: UUID | str) -> dict[str, Any]:
    """
    Get a project row.

    Raises:
        ProjectNotFoundError: If no row has this id
        StorageError: If the query fails
    """
    try:
        response = get_projects_table().select("*").eq("id", str(project_id)).execute()
    except Exception as e:
        logger.error(f"Failed to get project {project_id}: {e}")
        raise StorageError(f"Failed to load project: {e}") from e

    if not response.data:
        raise ProjectNotFoundError(f"Project {project_id} not found")
    return response.data[0]


def list_projects(limit: int = 100) -> list[dict[str, Any]]:
    """Projects, newest first."""
    try:
        response = (
            get_projects_table()
            .select("*")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to list projects: {e}")
        raise StorageError(f"Failed to list projects: {e}") from e
    return response.data or []


def delete_project(project_id: UUID | str) -> None:
    """Delete every stored artifact, then the row."""
    project = get_project(project_id)
    paths = [
        project[f"{stage.value}_file_path"]
        for stage in STAGE_DEFINITIONS
        if project.get(f"{stage.value}_file_path")
    ]
    remove_stage_files(paths)

    try:
        get_projects_table().delete().eq("id", str(project_id)).execute()
    except Exception as e:
        logger.error(f"Failed to delete project {project_id}: {e}")
        raise StorageError(f"Failed to delete project: {e}") from e

    logger.info(f"Deleted project {project_id}", extra={"project_id": str(project_id)})


def _update(project_id: UUID | str, updates: dict[str, Any]) -> None:
    updates["updated_at"] = _now()
    try:
        get_projects_table().update(updates).eq("id", str(project_id)).execute()
    except Exception as e:
        logger.error(f"Failed to update project {project_id}: {e}")
        raise StorageError(f"Failed to update project: {e}") from e


def mark_stage_completed(
    project_id: UUID | str,
    stage: StageId,
    file_path: str,
    current_stage: int,
    project_status: str,
) -> str:
    """
    Flag ``stage`` completed with its artifact path.

    Returns:
        The recorded ``generated_at`` timestamp
    """
    generated_at = _now()
    _update(
        project_id,
        {
            f"{stage.value}_completed": True,
            f"{stage.value}_file_path": file_path,
            f"{stage.value}_generated_at": generated_at,
            "current_stage": current_stage,
            "status": project_status,
        },
    )
    return generated_at


def clear_stages(project_id: UUID | str, stages: list[StageId], current_stage: int) -> list[str]:
    """
    Reset the given stages' columns and put the project back in progress.

    Returns:
        Names of the columns that were reset
    """
    updates: dict[str, Any] = {}
    for stage in stages:
        completed_col, path_col, generated_col = stage_columns(stage)
        updates[completed_col] = False
        updates[path_col] = None
        updates[generated_col] = None

    cleared = list(updates)
    updates["current_stage"] = current_stage
    updates["status"] = "in_progress"
    _update(project_id, updates)
    return cleared
