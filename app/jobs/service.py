"""Typed façade over the job store.

The service owns the job state machine: every status change is validated
against ``ALLOWED_TRANSITIONS`` and written with a status-guarded patch, so a
terminal job is never modified and concurrent writers cannot interleave a
stale transition.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel

from app.core.errors import (
    InvalidInputError,
    InvalidTransitionError,
    JobNotFoundError,
    RetryBudgetExhaustedError,
)
from app.jobs.models import (
    ALLOWED_TRANSITIONS,
    CANCELLABLE_STATUSES,
    DEFAULT_PRIORITIES,
    TERMINAL_STATUSES,
    Job,
    JobError,
    JobStatus,
    JobType,
    parse_input,
    utcnow,
)
from app.jobs.store import JobStore

logger = logging.getLogger(__name__)

ErrorLike = Union[JobError, BaseException, str, Dict[str, Any]]


def _as_job_error(error: ErrorLike) -> JobError:
    if isinstance(error, JobError):
        return error
    if isinstance(error, BaseException):
        return JobError.from_exception(error)
    if isinstance(error, dict):
        data = dict(error)
        data["message"] = str(data.get("message") or "").strip() or "Unknown error"
        return JobError.model_validate(data)
    return JobError(message=str(error).strip() or "Unknown error")


def _as_output(output: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json", exclude_none=True)
    return dict(output)


class JobService:
    """Create, observe and resolve background jobs."""

    def __init__(
        self,
        store: JobStore,
        default_max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._default_max_retries = default_max_retries
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    async def create(
        self,
        owner_id: str,
        organization_id: str,
        job_type: Union[JobType, str],
        input: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
        training_module_id: Optional[str] = None,
        assignment_id: Optional[str] = None,
    ) -> str:
        """Persist a new pending job and return its id."""
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise InvalidInputError(f"Unknown job type '{job_type}'")

        payload = parse_input(job_type, input)

        if priority is None:
            priority = DEFAULT_PRIORITIES[job_type]
        if not 1 <= priority <= 10:
            raise InvalidInputError("priority must be between 1 and 10")
        if max_retries is None:
            max_retries = self._default_max_retries
        if max_retries < 0:
            raise InvalidInputError("max_retries must not be negative")

        job = Job(
            owner_id=owner_id,
            organization_id=organization_id,
            type=job_type,
            priority=priority,
            input=payload.model_dump(mode="json", exclude_none=True),
            max_retries=max_retries,
            created_at=self._clock(),
            training_module_id=training_module_id,
            assignment_id=assignment_id,
        )
        stored = await self._store.insert(job)
        logger.info("Created %s job %s (priority %d)", job_type.value, stored.id, priority)
        return stored.id

    async def find(self, job_id: str) -> Optional[Job]:
        return await self._store.fetch(job_id)

    async def get(self, job_id: str) -> Job:
        job = await self._store.fetch(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_by_owner(self, owner_id: str, limit: int = 50) -> List[Job]:
        return await self._store.list_by_owner(owner_id, limit)

    async def list_by_entity(self, field: str, value: str) -> List[Job]:
        return await self._store.list_by_entity(field, value)

    async def list_pending(
        self,
        limit: int = 10,
        job_types: Optional[Iterable[Union[JobType, str]]] = None,
    ) -> List[Job]:
        types = [JobType(t) for t in job_types] if job_types else None
        return await self._store.list_eligible(self._clock(), limit, types)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update(
        self,
        job_id: str,
        status: Optional[Union[JobStatus, str]] = None,
        progress_percent: Optional[int] = None,
        progress_message: Optional[str] = None,
        output: Optional[Union[BaseModel, Dict[str, Any]]] = None,
        error: Optional[ErrorLike] = None,
    ) -> Job:
        """Merge-patch a job. Arguments left as None are not touched."""
        current = await self.get(job_id)
        if current.is_terminal:
            raise InvalidTransitionError(
                f"Job {job_id} is {current.status.value} and can no longer change",
                context={"job_id": job_id, "status": current.status.value},
            )

        fields: Dict[str, Any] = {}
        if progress_percent is not None:
            fields["progress_percent"] = max(0, min(100, int(progress_percent)))
        if progress_message is not None:
            fields["progress_message"] = progress_message
        if output is not None:
            fields["output"] = _as_output(output)
        if error is not None:
            fields["error"] = _as_job_error(error)

        expected = CANCELLABLE_STATUSES
        if status is not None:
            status = JobStatus(status)
            if status != current.status:
                if status not in ALLOWED_TRANSITIONS[current.status]:
                    raise InvalidTransitionError(
                        f"Cannot move job {job_id} from {current.status.value} to {status.value}",
                        context={"job_id": job_id, "status": current.status.value},
                    )
                expected = frozenset({current.status})
                fields["status"] = status
            if status == JobStatus.COMPLETED:
                if "output" not in fields and current.output is None:
                    raise InvalidInputError("A completed job requires output")
                if "error" in fields or current.error is not None:
                    raise InvalidInputError("A completed job cannot carry an error")
            if status == JobStatus.FAILED and "error" not in fields and current.error is None:
                raise InvalidInputError("A failed job requires an error")
            if status in TERMINAL_STATUSES:
                fields["completed_at"] = self._clock()

        if not fields:
            return current

        updated = await self._store.patch(job_id, fields, expected)
        if updated is None:
            latest = await self.get(job_id)
            raise InvalidTransitionError(
                f"Job {job_id} changed to {latest.status.value} concurrently",
                context={"job_id": job_id, "status": latest.status.value},
            )
        if "status" in fields:
            logger.info("Job %s: %s -> %s", job_id, current.status.value, updated.status.value)
        return updated

    async def update_progress(
        self, job_id: str, percent: int, message: Optional[str] = None
    ) -> Job:
        return await self.update(job_id, progress_percent=percent, progress_message=message)

    async def complete(self, job_id: str, output: Union[BaseModel, Dict[str, Any]]) -> Job:
        return await self.update(
            job_id, status=JobStatus.COMPLETED, progress_percent=100, output=output
        )

    async def fail(self, job_id: str, error: ErrorLike) -> Job:
        return await self.update(job_id, status=JobStatus.FAILED, error=error)

    async def schedule_retry(self, job_id: str, delay_minutes: float = 5) -> Job:
        """Move a processing job to ``retrying`` and push back its next claim."""
        current = await self.get(job_id)
        if JobStatus.RETRYING not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(
                f"Cannot retry job {job_id} from {current.status.value}",
                context={"job_id": job_id, "status": current.status.value},
            )
        attempt = current.retry_count + 1
        if attempt > current.max_retries:
            raise RetryBudgetExhaustedError(
                f"Job {job_id} has used all {current.max_retries} retries",
                context={"job_id": job_id, "retry_count": current.retry_count},
            )

        now = self._clock()
        fields = {
            "status": JobStatus.RETRYING,
            "retry_count": attempt,
            "next_retry_at": now + timedelta(minutes=delay_minutes),
            "progress_percent": 0,
            "progress_message": f"Retry {attempt}/{current.max_retries} scheduled",
        }
        updated = await self._store.patch(job_id, fields, {current.status})
        if updated is None:
            latest = await self.get(job_id)
            raise InvalidTransitionError(
                f"Job {job_id} changed to {latest.status.value} concurrently",
                context={"job_id": job_id, "status": latest.status.value},
            )
        logger.info(
            "Job %s scheduled for retry %d/%d at %s",
            job_id, attempt, current.max_retries, updated.next_retry_at,
        )
        return updated

    async def claim(self, job_id: str, expected_seconds: Optional[float] = None) -> Optional[Job]:
        """Atomically take ownership of an eligible job.

        ``expected_seconds`` sets the advisory ``estimated_completion``.

        Returns None when the job is no longer claimable (another pass took
        it, it was cancelled, or its retry time has not come yet).
        """
        now = self._clock()
        fields = {
            "status": JobStatus.PROCESSING,
            "progress_percent": 0,
            "progress_message": "Starting processing...",
            "started_at": now,
        }
        if expected_seconds is not None:
            fields["estimated_completion"] = now + timedelta(seconds=expected_seconds)
        return await self._store.claim(job_id, now, fields)

    async def cancel(self, job_id: str) -> Job:
        current = await self.get(job_id)
        if current.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot cancel job {job_id}: it is already {current.status.value}",
                context={"job_id": job_id, "status": current.status.value},
            )
        fields = {
            "status": JobStatus.CANCELLED,
            "progress_message": "Cancelled by user",
            "completed_at": self._clock(),
        }
        updated = await self._store.patch(job_id, fields, CANCELLABLE_STATUSES)
        if updated is None:
            latest = await self.get(job_id)
            raise InvalidTransitionError(
                f"Cannot cancel job {job_id}: it is already {latest.status.value}",
                context={"job_id": job_id, "status": latest.status.value},
            )
        logger.info("Job %s cancelled (was %s)", job_id, current.status.value)
        return updated

    async def cleanup(self, older_than_days: int = 30) -> int:
        """Delete terminal jobs that finished more than ``older_than_days`` ago."""
        if older_than_days < 0:
            raise InvalidInputError("older_than_days must not be negative")
        cutoff = self._clock() - timedelta(days=older_than_days)
        deleted = await self._store.delete_terminal_before(cutoff)
        logger.info("Deleted %d terminal jobs older than %s", deleted, cutoff.isoformat())
        return deleted
