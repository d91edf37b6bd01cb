import asyncio

import httpx
import pytest

from app.core.errors import JobNotFoundError, TransientExternalError
from app.core.retry import RetryPolicy
from app.jobs.models import JobError, JobStatus, JobStatusView, JobType, utcnow
from app.jobs.observer import (
    HttpJobSource,
    JobStatusObserver,
    MultiJobStatusObserver,
    PollingScheduler,
    _PollingObserver,
)

INTERVAL = 0.01


def view(status, progress=0, job_id="job-1", **kwargs):
    return JobStatusView(
        id=job_id,
        type=JobType.TRANSCRIPTION,
        status=status,
        progress_percent=progress,
        created_at=utcnow(),
        **kwargs,
    )


class FakeSource:
    """Returns queued states in order; the last one repeats."""

    def __init__(self, states_by_id):
        self.states = {k: list(v) for k, v in states_by_id.items()}
        self.calls = {k: 0 for k in states_by_id}
        self.cancelled = []

    async def get(self, job_id):
        if job_id not in self.states:
            raise JobNotFoundError(job_id)
        self.calls[job_id] += 1
        queue = self.states[job_id]
        state = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(state, BaseException):
            raise state
        return state

    async def cancel(self, job_id):
        self.cancelled.append(job_id)
        self.states[job_id] = [view(JobStatus.CANCELLED, job_id=job_id)]


@pytest.mark.asyncio
async def test_polling_stops_at_terminal_status():
    source = FakeSource({"job-1": [
        view(JobStatus.PROCESSING, 10),
        view(JobStatus.PROCESSING, 50),
        view(JobStatus.COMPLETED, 100, output={"transcript": "hi"}),
    ]})
    changes = []

    observer = JobStatusObserver(source, "job-1", interval=INTERVAL, on_change=changes.append)
    await observer.start()
    await observer.wait(timeout=2)

    assert observer.is_completed
    assert observer.progress == 100
    assert observer.output == {"transcript": "hi"}
    assert [c.progress_percent for c in changes] == [10, 50, 100]

    calls = source.calls["job-1"]
    await asyncio.sleep(INTERVAL * 10)
    assert source.calls["job-1"] == calls == 3
    assert not observer.polling
    await observer.stop()


@pytest.mark.asyncio
async def test_one_fetch_in_flight_per_job():
    gate = asyncio.Event()

    class SlowSource(FakeSource):
        async def get(self, job_id):
            if self.calls[job_id] >= 1:
                self.calls[job_id] += 1
                await gate.wait()
                return view(JobStatus.COMPLETED, 100)
            return await super().get(job_id)

    source = SlowSource({"job-1": [view(JobStatus.PROCESSING, 20)]})
    observer = JobStatusObserver(source, "job-1", interval=INTERVAL)
    await observer.start()

    await asyncio.sleep(INTERVAL * 10)
    # The initial fetch plus one stuck poll; every other tick was skipped.
    assert source.calls["job-1"] == 2

    gate.set()
    await observer.wait(timeout=2)
    assert observer.is_completed
    await observer.stop()


@pytest.mark.asyncio
async def test_scheduler_skips_overlapping_calls():
    scheduler = PollingScheduler()
    gate = asyncio.Event()
    calls = []

    async def slow():
        calls.append(1)
        await gate.wait()

    first = asyncio.create_task(scheduler.run_once("job-1", slow))
    await asyncio.sleep(0)
    assert scheduler.is_in_flight("job-1")
    assert await scheduler.run_once("job-1", slow) is False

    gate.set()
    assert await first is True
    assert not scheduler.is_in_flight("job-1")
    assert calls == [1]


@pytest.mark.asyncio
async def test_missing_job_stops_polling():
    source = FakeSource({})
    observer = JobStatusObserver(source, "ghost", interval=INTERVAL)

    await observer.start()

    assert observer.not_found
    assert observer.fetch_error == "Job ghost not found"
    assert not observer.polling
    await observer.wait(timeout=1)


@pytest.mark.asyncio
async def test_fetch_errors_are_kept_and_polling_continues():
    source = FakeSource({"job-1": [
        TransientExternalError("network down"),
        view(JobStatus.COMPLETED, 100),
    ]})
    observer = JobStatusObserver(source, "job-1", interval=INTERVAL)

    await observer.start()
    assert observer.fetch_error == "network down"
    assert observer.job is None

    await observer.wait(timeout=2)
    assert observer.fetch_error is None
    assert observer.is_completed
    await observer.stop()


@pytest.mark.asyncio
async def test_idle_observer_makes_no_requests():
    source = FakeSource({"job-1": [view(JobStatus.PENDING)]})
    async with JobStatusObserver(source, None, interval=INTERVAL) as observer:
        await observer.wait(timeout=1)
        assert observer.status is None
        assert observer.progress == 0
    assert source.calls["job-1"] == 0


@pytest.mark.asyncio
async def test_failed_job_exposes_error_message():
    failed = view(JobStatus.FAILED, 30, error=JobError(message="Transcription result was empty"))
    source = FakeSource({"job-1": [failed]})

    async with JobStatusObserver(source, "job-1", interval=INTERVAL) as observer:
        assert observer.is_failed
        assert observer.is_terminal
        assert observer.error_message == "Transcription result was empty"


@pytest.mark.asyncio
async def test_cancel_through_observer():
    source = FakeSource({"job-1": [view(JobStatus.PROCESSING, 40)]})
    observer = JobStatusObserver(source, "job-1", interval=INTERVAL)
    await observer.start()

    await observer.cancel()
    await observer.wait(timeout=1)

    assert source.cancelled == ["job-1"]
    assert observer.status == JobStatus.CANCELLED
    await observer.stop()


@pytest.mark.asyncio
async def test_observer_reads_from_job_service(service, create_job):
    job_id = await create_job()
    await service.claim(job_id)
    await service.update_progress(job_id, 40, "Transcribing audio...")

    observer = JobStatusObserver(service, job_id, interval=INTERVAL)
    await observer.start()
    assert observer.is_processing
    assert observer.progress == 40

    await service.complete(job_id, {"transcript": "done"})
    await observer.wait(timeout=2)
    assert observer.output == {"transcript": "done"}
    await observer.stop()


@pytest.mark.asyncio
async def test_multi_observer_aggregates():
    source = FakeSource({
        "a": [view(JobStatus.COMPLETED, 100, job_id="a")],
        "b": [view(JobStatus.PROCESSING, 50, job_id="b"), view(JobStatus.FAILED, 50, job_id="b")],
    })
    observer = MultiJobStatusObserver(source, ["a", "b", "missing"], interval=INTERVAL)

    await observer.start()
    assert len(observer.jobs) == 2
    assert observer.overall_progress == 75
    assert observer.has_active_jobs
    assert not observer.all_terminal

    await observer.wait(timeout=2)
    assert observer.all_terminal
    assert observer.has_failures
    assert not observer.all_completed
    assert [j.id for j in observer.completed_jobs] == ["a"]
    assert [j.id for j in observer.failed_jobs] == ["b"]
    assert source.calls["a"] == 1
    await observer.stop()


def _json_view(status="processing", progress=30):
    return {
        "id": "job-1",
        "jobType": "transcription",
        "status": status,
        "progressPercentage": progress,
        "progressMessage": "Transcribing audio...",
        "created_at": "2026-01-01T12:00:00Z",
    }


async def _no_sleep(delay):
    return None


@pytest.mark.asyncio
async def test_http_source_parses_status_and_retries():
    responses = [httpx.Response(503, json={"error": "busy"}), httpx.Response(200, json=_json_view())]
    seen = []

    def handler(request):
        seen.append(request)
        return responses.pop(0)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        source = HttpJobSource(
            client, "https://jobs.example.com", access_token="token-1",
            retry_policy=RetryPolicy(max_attempts=3, sleep=_no_sleep),
        )
        job = await source.get("job-1")

    assert job.status == JobStatus.PROCESSING
    assert job.progress_percent == 30
    assert len(seen) == 2
    assert seen[0].url.path == "/api/v1/jobs/job-1"
    assert seen[0].headers["Authorization"] == "Bearer token-1"


@pytest.mark.asyncio
async def test_http_source_maps_404_to_not_found():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, json={"detail": "not found"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        source = HttpJobSource(client, "https://jobs.example.com")
        with pytest.raises(JobNotFoundError):
            await source.get("job-1")
    assert len(calls) == 1


def test_polling_observer_requires_fetch_hooks():
    class Incomplete(_PollingObserver):
        def _pending_ids(self):
            return []

    with pytest.raises(TypeError):
        Incomplete(FakeSource({}), INTERVAL)
