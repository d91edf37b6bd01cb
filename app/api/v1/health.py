"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter, Request

from app.config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Service health, configured backends and system info."""
    state = request.app.state
    return {
        "status": "healthy",
        "service": settings.app_name,
        "job_store": settings.job_store_backend,
        "processor_ready": getattr(state, "processor", None) is not None,
        "job_types": [t.value for t in state.registry.job_types()] if getattr(state, "registry", None) else [],
        "trigger_configured": bool(settings.background_job_token),
        "python_version": sys.version,
        "platform": platform.platform(),
    }
