"""Job management API: create jobs, poll status, cancel, and the processing trigger."""

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from app.api.v1.deps import get_job_service, get_processor
from app.auth.supabase_auth import user_id_of, verify_jwt, verify_trigger_token
from app.config import settings
from app.core.errors import JobNotFoundError, JobsError, to_http_error
from app.jobs.models import Job, JobStatusView
from app.jobs.processor import JobProcessor
from app.jobs.service import JobService

logger = logging.getLogger(__name__)

router = APIRouter()


class JobCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_type: str = Field(alias="jobType")
    input_data: Dict[str, Any] = Field(default_factory=dict, alias="inputData")
    organization_id: str = Field(alias="companyId")
    priority: Optional[int] = None
    max_retries: Optional[int] = Field(default=None, alias="maxRetries")
    training_module_id: Optional[str] = Field(default=None, alias="trainingModuleId")
    assignment_id: Optional[str] = Field(default=None, alias="assignmentId")


class JobCreateResponse(BaseModel):
    job_id: str
    status: str
    message: str


class CleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    older_than_days: Optional[int] = Field(default=None, alias="olderThanDays", ge=0)


def _view(job: Job) -> Dict[str, Any]:
    return JobStatusView.from_job(job).model_dump(mode="json", by_alias=True)


async def _owned_job(service: JobService, job_id: str, user: Any) -> Job:
    job = await service.get(job_id)
    # Other users' jobs are indistinguishable from missing ones.
    if job.owner_id != user_id_of(user):
        raise JobNotFoundError(job_id)
    return job


@router.post("/jobs", response_model=JobCreateResponse)
async def create_job(
    request: JobCreateRequest,
    user: Any = Depends(verify_jwt),
    service: JobService = Depends(get_job_service),
):
    """Queue a new background job for the caller."""
    try:
        job_id = await service.create(
            owner_id=user_id_of(user),
            organization_id=request.organization_id,
            job_type=request.job_type,
            input=request.input_data,
            priority=request.priority,
            max_retries=request.max_retries,
            training_module_id=request.training_module_id,
            assignment_id=request.assignment_id,
        )
    except JobsError as e:
        raise to_http_error(e)
    return JobCreateResponse(
        job_id=job_id,
        status="pending",
        message="Job created successfully. Poll GET /api/v1/jobs/{id} for status.",
    )


@router.get("/jobs")
async def list_jobs(
    limit: int = Query(50, ge=1, le=200),
    training_module_id: Optional[str] = Query(None, alias="trainingModuleId"),
    assignment_id: Optional[str] = Query(None, alias="assignmentId"),
    user: Any = Depends(verify_jwt),
    service: JobService = Depends(get_job_service),
) -> List[Dict[str, Any]]:
    """List the caller's jobs, newest first, optionally narrowed to one business entity."""
    owner_id = user_id_of(user)
    try:
        if training_module_id:
            jobs = await service.list_by_entity("training_module_id", training_module_id)
        elif assignment_id:
            jobs = await service.list_by_entity("assignment_id", assignment_id)
        else:
            jobs = await service.list_by_owner(owner_id, limit)
    except JobsError as e:
        raise to_http_error(e)
    return [_view(job) for job in jobs if job.owner_id == owner_id][:limit]


@router.get("/jobs/{job_id}")
async def get_job_status(
    job_id: str,
    user: Any = Depends(verify_jwt),
    service: JobService = Depends(get_job_service),
):
    """Get the current status of a job; output and error only once terminal."""
    try:
        job = await _owned_job(service, job_id, user)
    except JobsError as e:
        raise to_http_error(e)
    return _view(job)


@router.delete("/jobs/{job_id}")
async def cancel_job(
    job_id: str,
    user: Any = Depends(verify_jwt),
    service: JobService = Depends(get_job_service),
):
    """Cancel a pending, processing or retrying job."""
    try:
        await _owned_job(service, job_id, user)
        job = await service.cancel(job_id)
    except JobsError as e:
        raise to_http_error(e)
    return _view(job)


@router.post("/jobs/process", dependencies=[Depends(verify_trigger_token)])
async def process_jobs(
    request: Request,
    processor: JobProcessor = Depends(get_processor),
):
    """Run one processing batch. Called by the external scheduler.

    Body ``{"jobTypes": [...]}`` is optional; a missing or unreadable body
    processes every job type.
    """
    job_types = None
    raw = await request.body()
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable process trigger body")
            body = None
        if isinstance(body, dict) and isinstance(body.get("jobTypes"), list):
            job_types = body["jobTypes"]

    try:
        summary = await processor.process_batch(job_types)
    except JobsError as e:
        raise to_http_error(e)
    return summary.to_response()


@router.post("/jobs/cleanup", dependencies=[Depends(verify_trigger_token)])
async def cleanup_jobs(
    request: Optional[CleanupRequest] = Body(None),
    service: JobService = Depends(get_job_service),
):
    """Delete terminal jobs older than the retention window."""
    days = settings.job_retention_days
    if request is not None and request.older_than_days is not None:
        days = request.older_than_days
    try:
        deleted = await service.cleanup(days)
    except JobsError as e:
        raise to_http_error(e)
    return {"deletedCount": deleted}
