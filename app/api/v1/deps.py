"""FastAPI dependencies resolving the objects wired up by the lifespan."""

from fastapi import HTTPException, Request

from app.jobs.processor import JobProcessor
from app.jobs.service import JobService
from app.storage.uploads import UploadStorage


def _state(request: Request, name: str, label: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{label} not initialized")
    return value


def get_job_service(request: Request) -> JobService:
    return _state(request, "job_service", "Job service")


def get_processor(request: Request) -> JobProcessor:
    return _state(request, "processor", "Job processor")


def get_upload_storage(request: Request) -> UploadStorage:
    return _state(request, "upload_storage", "Upload storage")
