"""API router for v1 endpoints."""

from fastapi import APIRouter, Depends

from app.api import generation, pipeline_projects
from app.core.auth_middleware import require_operator

router = APIRouter(dependencies=[Depends(require_operator)])

# Stateless generation: upstream payloads in the request body
router.include_router(generation.router, tags=["generation"])

# Project-bound pipeline: persisted stages, clear/upload, artifacts
router.include_router(pipeline_projects.router, prefix="/projects", tags=["projects"])
