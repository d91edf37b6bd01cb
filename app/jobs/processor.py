"""Batch job processor.

One call to :meth:`JobProcessor.process_batch` is one bounded unit of work:
list eligible jobs, claim each one atomically, run its executor, and resolve
it to completed, retrying or failed. The processor holds no state between
calls, so it can be driven by any external scheduler hitting the trigger
endpoint.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from app.core.errors import (
    InvalidTransitionError,
    JobsError,
    OperationCancelledError,
    TransientExternalError,
    error_message,
)
from app.jobs.executors.registry import ExecutorRegistry
from app.jobs.models import Job, JobStatus, JobType
from app.jobs.service import JobService

logger = logging.getLogger(__name__)


@dataclass
class ProcessingSummary:
    processed_jobs: List[str] = field(default_factory=list)
    retried_jobs: List[str] = field(default_factory=list)
    failed_jobs: List[str] = field(default_factory=list)
    skipped_jobs: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.processed_jobs)

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "message": "Job processing completed",
            "processedCount": self.processed_count,
            "processedJobs": list(self.processed_jobs),
        }
        if self.errors:
            response["errors"] = list(self.errors)
        return response


class _ProgressReporter:
    """Writes executor progress, never letting it go backwards within an attempt."""

    def __init__(self, service: JobService, job_id: str):
        self._service = service
        self._job_id = job_id
        self._last = 0

    async def __call__(self, percent: int, message: Optional[str] = None) -> None:
        percent = max(self._last, max(0, min(100, int(percent))))
        try:
            await self._service.update_progress(self._job_id, percent, message)
        except InvalidTransitionError:
            latest = await self._service.find(self._job_id)
            if latest is not None and latest.status == JobStatus.CANCELLED:
                raise OperationCancelledError(f"Job {self._job_id} was cancelled")
            raise
        self._last = percent


def _should_retry(exc: BaseException) -> bool:
    # Errors outside the taxonomy are unexpected; give them the job's retry budget.
    if isinstance(exc, JobsError):
        return exc.retryable
    return True


class JobProcessor:
    def __init__(
        self,
        service: JobService,
        registry: ExecutorRegistry,
        batch_size: int = 20,
        retry_delay_minutes: float = 5,
    ):
        self._service = service
        self._registry = registry
        self._batch_size = batch_size
        self._retry_delay_minutes = retry_delay_minutes

    @staticmethod
    def resolve_job_types(job_types: Optional[Iterable[Union[JobType, str]]]) -> Optional[Set[JobType]]:
        """Turn a job type hint into a set of known types; None means all types."""
        if not job_types:
            return None
        known = set()
        for value in job_types:
            try:
                known.add(JobType(value))
            except ValueError:
                logger.warning("Ignoring unknown job type hint '%s'", value)
        return known or None

    async def process_batch(
        self, job_types: Optional[Iterable[Union[JobType, str]]] = None
    ) -> ProcessingSummary:
        """Claim and run up to ``batch_size`` eligible jobs, one after another."""
        types = self.resolve_job_types(job_types)
        summary = ProcessingSummary()

        jobs = await self._service.list_pending(self._batch_size, types)
        logger.info("Processing batch of %d eligible job(s)", len(jobs))

        for job in jobs:
            try:
                await self._process_one(job, summary)
            except Exception as e:
                logger.exception("Unexpected error while processing job %s", job.id)
                summary.errors.append(f"{job.id}: {error_message(e)}")

        logger.info(
            "Batch done: %d completed, %d retrying, %d failed, %d skipped",
            summary.processed_count,
            len(summary.retried_jobs),
            len(summary.failed_jobs),
            len(summary.skipped_jobs),
        )
        return summary

    async def _process_one(self, job: Job, summary: ProcessingSummary) -> None:
        executor = self._registry.get(job.type)
        try:
            claimed = await self._service.claim(job.id, executor.timeout_seconds)
        except Exception as e:
            logger.error("Failed to claim job %s: %s", job.id, e)
            summary.errors.append(f"{job.id}: {error_message(e)}")
            return
        if claimed is None:
            logger.info("Job %s was claimed elsewhere or is no longer eligible", job.id)
            summary.skipped_jobs.append(job.id)
            return

        progress = _ProgressReporter(self._service, claimed.id)
        try:
            payload = executor.parse(claimed)
            output = await asyncio.wait_for(
                executor.execute(claimed, payload, progress),
                timeout=executor.timeout_seconds,
            )
            await self._service.complete(claimed.id, output)
        except OperationCancelledError:
            logger.info("Job %s was cancelled while running", claimed.id)
            summary.skipped_jobs.append(claimed.id)
            return
        except InvalidTransitionError as e:
            if await self._was_cancelled(claimed.id):
                logger.info("Job %s was cancelled while running; result dropped", claimed.id)
                summary.skipped_jobs.append(claimed.id)
                return
            await self._resolve_failure(claimed, e, summary)
            return
        except asyncio.TimeoutError:
            timeout = TransientExternalError(
                f"{claimed.type.value} job timed out after {executor.timeout_seconds:g}s"
            )
            logger.warning("Job %s: %s", claimed.id, timeout)
            await self._resolve_failure(claimed, timeout, summary)
            return
        except Exception as e:
            logger.exception("Failed to process job %s", claimed.id)
            await self._resolve_failure(claimed, e, summary)
            return

        summary.processed_jobs.append(claimed.id)

    async def _was_cancelled(self, job_id: str) -> bool:
        latest = await self._service.find(job_id)
        return latest is not None and latest.status == JobStatus.CANCELLED

    async def _resolve_failure(self, job: Job, exc: BaseException, summary: ProcessingSummary) -> None:
        summary.errors.append(f"{job.id}: {error_message(exc)}")
        retry = _should_retry(exc) and job.retry_count < job.max_retries
        try:
            if retry:
                await self._service.schedule_retry(job.id, self._retry_delay_minutes)
                summary.retried_jobs.append(job.id)
            else:
                await self._service.fail(job.id, exc)
                summary.failed_jobs.append(job.id)
        except InvalidTransitionError:
            logger.info("Job %s left processing before its failure was recorded", job.id)
        except JobsError as e:
            logger.error("Failed to record failure of job %s: %s", job.id, e)
            summary.errors.append(f"{job.id}: {error_message(e)}")
