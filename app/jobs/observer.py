"""Client-side job status polling.

Observers fetch a job once on start, then poll on a fixed interval until the
job reaches a terminal status; after that no further fetches are made. Every
fetch goes through a :class:`PollingScheduler`, which keeps at most one
request in flight per job id: a timer tick that fires while the previous
fetch is still outstanding is skipped rather than queued.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set, Union

import httpx

from app.core.errors import InvalidInputError, JobNotFoundError, error_message
from app.core.retry import RetryPolicy, retry_async
from app.jobs.models import Job, JobError, JobStatus, JobStatusView
from app.providers.http import send

logger = logging.getLogger(__name__)

JobLike = Union[Job, JobStatusView]

PROVIDER = "jobs-api"


class JobSource(Protocol):
    """Anything that can fetch and cancel jobs (JobService, HttpJobSource)."""

    async def get(self, job_id: str) -> JobLike:
        ...

    async def cancel(self, job_id: str) -> Any:
        ...


class PollingScheduler:
    """Tracks one in-flight request per key."""

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Task] = {}

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def run_once(self, key: str, fn: Callable[[], Awaitable[Any]]) -> bool:
        """Run ``fn`` unless a call for ``key`` is already running.

        Returns False when the call was skipped.
        """
        if key in self._in_flight:
            return False
        task = asyncio.ensure_future(fn())
        self._in_flight[key] = task
        try:
            await task
        finally:
            self._in_flight.pop(key, None)
        return True

    async def wait_idle(self, key: str) -> None:
        task = self._in_flight.get(key)
        if task is not None:
            await asyncio.wait({task})

    async def run_now(self, key: str, fn: Callable[[], Awaitable[Any]]) -> None:
        """Run ``fn`` as soon as no call for ``key`` is in flight."""
        while not await self.run_once(key, fn):
            await self.wait_idle(key)


class _PollingObserver(ABC):
    def __init__(
        self,
        source: JobSource,
        interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._source = source
        self._interval = interval
        self._sleep = sleep
        self._scheduler = PollingScheduler()
        self._loop_task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._done = asyncio.Event()

    @abstractmethod
    def _pending_ids(self) -> List[str]:
        """Ids still worth fetching."""
        ...

    @abstractmethod
    async def _fetch(self, job_id: str) -> None:
        ...

    def _check_done(self) -> None:
        if not self._pending_ids():
            self._done.set()

    @property
    def polling(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Fetch immediately, then keep polling in the background."""
        if self._loop_task is not None:
            return
        await self.refresh()
        self._check_done()
        if not self._done.is_set():
            self._loop_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while not self._done.is_set():
            await self._sleep(self._interval)
            for job_id in self._pending_ids():
                self._spawn_tick(job_id)

    def _spawn_tick(self, job_id: str) -> None:
        if self._scheduler.is_in_flight(job_id):
            logger.debug("Skipping poll of %s: previous fetch still in flight", job_id)
            return
        task = asyncio.create_task(self._scheduler.run_once(job_id, lambda: self._fetch(job_id)))
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def refresh(self) -> None:
        """Re-fetch every tracked job now, waiting out any fetch already in flight."""
        await asyncio.gather(
            *(self._scheduler.run_now(job_id, lambda j=job_id: self._fetch(j)) for job_id in self._all_ids())
        )
        self._check_done()

    def _all_ids(self) -> List[str]:
        return self._pending_ids()

    async def wait(self, timeout: Optional[float] = None) -> None:
        """Block until polling has stopped because everything is terminal."""
        await asyncio.wait_for(self._done.wait(), timeout)

    async def stop(self) -> None:
        tasks = list(self._ticks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()


class JobStatusObserver(_PollingObserver):
    """Polls one job until it completes, fails or is cancelled.

    A ``job_id`` of None makes the observer idle: nothing is fetched.
    Fetch failures other than "not found" are kept in ``fetch_error`` and
    polling continues; a missing job stops polling.
    """

    def __init__(
        self,
        source: JobSource,
        job_id: Optional[str],
        interval: float = 2.0,
        on_change: Optional[Callable[[JobLike], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(source, interval, sleep)
        self.job_id = job_id
        self.job: Optional[JobLike] = None
        self.fetch_error: Optional[str] = None
        self.not_found = False
        self._on_change = on_change

    def _pending_ids(self) -> List[str]:
        if self.job_id is None or self.not_found:
            return []
        if self.job is not None and self.job.is_terminal:
            return []
        return [self.job_id]

    async def _fetch(self, job_id: str) -> None:
        try:
            job = await self._source.get(job_id)
        except JobNotFoundError as e:
            self.fetch_error = error_message(e)
            self.not_found = True
            self._check_done()
            return
        except Exception as e:
            self.fetch_error = error_message(e, "Failed to fetch job status")
            logger.warning("Failed to fetch status of job %s: %s", job_id, self.fetch_error)
            return

        self.fetch_error = None
        changed = self.job is None or (self.job.status, self.job.progress_percent) != (
            job.status, job.progress_percent
        )
        self.job = job
        if changed and self._on_change is not None:
            self._on_change(job)
        self._check_done()

    async def refresh(self) -> None:
        if self.job_id is None:
            self._done.set()
            return
        await self._scheduler.run_now(self.job_id, lambda: self._fetch(self.job_id))
        self._check_done()

    async def cancel(self) -> None:
        """Ask the job source to cancel the job, then refresh."""
        if self.job_id is None:
            return
        await self._source.cancel(self.job_id)
        await self.refresh()

    # Derived state

    @property
    def status(self) -> Optional[JobStatus]:
        return self.job.status if self.job else None

    @property
    def progress(self) -> int:
        return self.job.progress_percent if self.job else 0

    @property
    def output(self) -> Optional[Dict[str, Any]]:
        return self.job.output if self.job else None

    @property
    def error(self) -> Optional[JobError]:
        return self.job.error if self.job else None

    @property
    def error_message(self) -> Optional[str]:
        if not self.is_failed:
            return None
        return (self.error.message if self.error else "") or "Unknown error"

    @property
    def retry_count(self) -> int:
        return self.job.retry_count if self.job else 0

    @property
    def max_retries(self) -> int:
        return self.job.max_retries if self.job else 3

    @property
    def is_terminal(self) -> bool:
        return self.job is not None and self.job.is_terminal

    @property
    def is_completed(self) -> bool:
        return self.status == JobStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == JobStatus.FAILED

    @property
    def is_processing(self) -> bool:
        return self.status == JobStatus.PROCESSING

    @property
    def is_pending(self) -> bool:
        return self.status == JobStatus.PENDING


class MultiJobStatusObserver(_PollingObserver):
    """Polls a set of jobs and aggregates their progress.

    Jobs that turn out not to exist are dropped from tracking. Polling stops
    once every remaining job is terminal.
    """

    def __init__(
        self,
        source: JobSource,
        job_ids: Iterable[str],
        interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(source, interval, sleep)
        self.job_ids: List[str] = list(dict.fromkeys(job_ids))
        self._jobs: Dict[str, JobLike] = {}
        self._missing: Set[str] = set()
        self.fetch_error: Optional[str] = None

    def _tracked_ids(self) -> List[str]:
        return [j for j in self.job_ids if j not in self._missing]

    def _pending_ids(self) -> List[str]:
        return [
            j for j in self._tracked_ids()
            if j not in self._jobs or not self._jobs[j].is_terminal
        ]

    def _all_ids(self) -> List[str]:
        return self._tracked_ids()

    async def _fetch(self, job_id: str) -> None:
        try:
            self._jobs[job_id] = await self._source.get(job_id)
        except JobNotFoundError:
            self._missing.add(job_id)
            self._jobs.pop(job_id, None)
        except Exception as e:
            self.fetch_error = error_message(e, "Failed to fetch job statuses")
            logger.warning("Failed to fetch status of job %s: %s", job_id, self.fetch_error)
            return
        self._check_done()

    @property
    def jobs(self) -> List[JobLike]:
        return [self._jobs[j] for j in self._tracked_ids() if j in self._jobs]

    def _with_status(self, *statuses: JobStatus) -> List[JobLike]:
        return [j for j in self.jobs if j.status in statuses]

    @property
    def completed_jobs(self) -> List[JobLike]:
        return self._with_status(JobStatus.COMPLETED)

    @property
    def failed_jobs(self) -> List[JobLike]:
        return self._with_status(JobStatus.FAILED)

    @property
    def processing_jobs(self) -> List[JobLike]:
        return self._with_status(JobStatus.PROCESSING, JobStatus.RETRYING)

    @property
    def pending_jobs(self) -> List[JobLike]:
        return self._with_status(JobStatus.PENDING)

    @property
    def overall_progress(self) -> int:
        jobs = self.jobs
        if not jobs:
            return 0
        return round(sum(j.progress_percent for j in jobs) / len(jobs))

    @property
    def all_completed(self) -> bool:
        jobs = self.jobs
        return bool(jobs) and len(self.completed_jobs) == len(jobs)

    @property
    def all_terminal(self) -> bool:
        return not self._pending_ids()

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_jobs)

    @property
    def has_active_jobs(self) -> bool:
        return bool(self.processing_jobs or self.pending_jobs)


class HttpJobSource:
    """Fetches and cancels jobs through the service's HTTP API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        access_token: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        self._retry = retry_policy or RetryPolicy(max_attempts=3, initial_delay=0.5, max_delay=4.0)

    def _url(self, job_id: str) -> str:
        return f"{self._base_url}/api/v1/jobs/{job_id}"

    async def get(self, job_id: str) -> JobStatusView:
        async def _call() -> httpx.Response:
            try:
                return await send(self._client, "GET", self._url(job_id), PROVIDER, headers=self._headers)
            except InvalidInputError as e:
                if e.status_code == 404:
                    raise JobNotFoundError(job_id) from e
                raise

        response = await retry_async(_call, self._retry)
        return JobStatusView.model_validate(response.json())

    async def cancel(self, job_id: str) -> None:
        await send(self._client, "DELETE", self._url(job_id), PROVIDER, headers=self._headers)
