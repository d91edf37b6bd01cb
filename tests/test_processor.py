import asyncio
from datetime import timedelta

import pytest

from app.core.errors import InvalidInputError, QuotaExceededError, TransientExternalError
from app.jobs.models import Job, JobStatus, JobType
from app.jobs.processor import JobProcessor, ProcessingSummary
from app.jobs.service import JobService
from app.jobs.store import InMemoryJobStore


@pytest.fixture
def processor(service, registry):
    return JobProcessor(service, registry, batch_size=20, retry_delay_minutes=5)


@pytest.mark.asyncio
async def test_happy_path_completes_job(service, processor, create_job):
    job_id = await create_job(JobType.TRANSCRIPTION)

    summary = await processor.process_batch()

    assert summary.processed_jobs == [job_id]
    job = await service.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress_percent == 100
    assert job.output == {"transcript": "hello world"}
    assert summary.to_response() == {
        "message": "Job processing completed",
        "processedCount": 1,
        "processedJobs": [job_id],
    }


@pytest.mark.asyncio
async def test_transient_failure_retries_then_fails(service, processor, executors, create_job, clock):
    executors[JobType.TRANSCRIPTION].outcomes = [
        TransientExternalError("provider 503"),
        TransientExternalError("provider 503 again"),
    ]
    job_id = await create_job(max_retries=1)

    first = await processor.process_batch()
    assert first.retried_jobs == [job_id]
    job = await service.get(job_id)
    assert job.status == JobStatus.RETRYING
    assert job.retry_count == 1
    assert first.to_response()["errors"] == [f"{job_id}: provider 503"]

    # Not due yet
    assert (await processor.process_batch()).processed_count == 0
    assert executors[JobType.TRANSCRIPTION].calls == [job_id]

    clock.advance(minutes=5)
    second = await processor.process_batch()
    assert second.failed_jobs == [job_id]
    job = await service.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 1
    assert job.error.message == "provider 503 again"
    assert job.error.retryable is True


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [InvalidInputError("bad audio"), QuotaExceededError("quota exceeded")])
async def test_non_retryable_errors_fail_immediately(service, processor, executors, create_job, error):
    executors[JobType.TRANSCRIPTION].outcomes = [error]
    job_id = await create_job()

    summary = await processor.process_batch()

    assert summary.failed_jobs == [job_id]
    job = await service.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 0
    assert job.error.code == error.code


@pytest.mark.asyncio
async def test_unexpected_errors_are_retried(service, processor, executors, create_job):
    executors[JobType.TRANSCRIPTION].outcomes = [RuntimeError("boom")]
    job_id = await create_job()

    summary = await processor.process_batch()

    assert summary.retried_jobs == [job_id]
    assert (await service.get(job_id)).status == JobStatus.RETRYING


@pytest.mark.asyncio
async def test_invalid_stored_input_fails_without_retry(service, store, processor, executors):
    job = Job(owner_id="user-1", organization_id="org-1", type=JobType.TRANSCRIPTION, input={})
    await store.insert(job)

    summary = await processor.process_batch()

    assert summary.failed_jobs == [job.id]
    stored = await service.get(job.id)
    assert stored.error.code == "invalid_input"
    assert executors[JobType.TRANSCRIPTION].calls == []


@pytest.mark.asyncio
async def test_job_claimed_elsewhere_is_skipped(store, clock, registry, executors, create_job):
    class RacingService(JobService):
        async def list_pending(self, limit=10, job_types=None):
            jobs = await super().list_pending(limit, job_types)
            for job in jobs:
                await super().claim(job.id)
            return jobs

    racing = RacingService(store, clock=clock)
    job_id = await create_job()

    summary = await JobProcessor(racing, registry).process_batch()

    assert summary.skipped_jobs == [job_id]
    assert summary.processed_count == 0
    assert executors[JobType.TRANSCRIPTION].calls == []


@pytest.mark.asyncio
async def test_cancel_during_execution_stops_job(service, processor, executors, create_job):
    async def cancel_then_report(job, progress):
        await service.cancel(job.id)
        await progress(90, "almost")
        raise AssertionError("progress after cancellation should have stopped the executor")

    executors[JobType.TRANSCRIPTION].outcomes = [cancel_then_report]
    job_id = await create_job()

    summary = await processor.process_batch()

    assert summary.skipped_jobs == [job_id]
    job = await service.get(job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.output is None


@pytest.mark.asyncio
async def test_result_of_cancelled_job_is_dropped(service, processor, executors, create_job):
    async def cancel_and_finish(job, progress):
        await service.cancel(job.id)
        return executors[JobType.TRANSCRIPTION].default_output()

    executors[JobType.TRANSCRIPTION].outcomes = [cancel_and_finish]
    job_id = await create_job()

    summary = await processor.process_batch()

    assert summary.skipped_jobs == [job_id]
    assert (await service.get(job_id)).status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_executor_timeout_is_retryable(service, processor, executors, create_job):
    async def hang(job, progress):
        await asyncio.sleep(5)

    executor = executors[JobType.SPEECH_SYNTHESIS]
    executor.timeout_seconds = 0.01
    executor.outcomes = [hang]
    job_id = await create_job(JobType.SPEECH_SYNTHESIS)

    summary = await processor.process_batch()

    assert summary.retried_jobs == [job_id]
    assert "timed out" in summary.errors[0]


@pytest.mark.asyncio
async def test_progress_never_goes_backwards(service, processor, executors, create_job):
    seen = []

    async def record(job, progress):
        seen.append((await service.get(job.id)).progress_percent)
        return executors[JobType.TRANSCRIPTION].default_output()

    executor = executors[JobType.TRANSCRIPTION]
    executor.progress_steps = [60, 40]
    executor.outcomes = [record]
    await create_job()

    await processor.process_batch()

    assert seen == [60]


@pytest.mark.asyncio
async def test_job_type_hint_restricts_batch(service, processor, create_job):
    transcription = await create_job(JobType.TRANSCRIPTION)
    speech = await create_job(JobType.SPEECH_SYNTHESIS)

    summary = await processor.process_batch(["speech_synthesis", "not_a_type"])

    assert summary.processed_jobs == [speech]
    assert (await service.get(transcription)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_batch_size_bounds_work(service, registry, create_job):
    for _ in range(3):
        await create_job()

    summary = await JobProcessor(service, registry, batch_size=2).process_batch()

    assert summary.processed_count == 2
    assert len(await service.list_pending()) == 1


def test_unknown_hints_mean_all_types():
    assert JobProcessor.resolve_job_types(None) is None
    assert JobProcessor.resolve_job_types(["nope"]) is None
    assert JobProcessor.resolve_job_types(["transcription"]) == {JobType.TRANSCRIPTION}


def test_summary_response_omits_empty_errors():
    assert "errors" not in ProcessingSummary().to_response()


@pytest.mark.asyncio
async def test_claim_sets_estimated_completion(service, processor, executors, clock, create_job):
    job_id = await create_job()

    await processor.process_batch()

    job = await service.get(job_id)
    timeout = executors[JobType.TRANSCRIPTION].timeout_seconds
    assert job.estimated_completion == clock.now + timedelta(seconds=timeout)


@pytest.mark.asyncio
async def test_cancelled_pending_job_is_never_run(service, processor, executors, create_job):
    job_id = await create_job()
    await service.cancel(job_id)

    summary = await processor.process_batch()

    assert summary.processed_count == 0
    assert summary.skipped_jobs == []
    assert executors[JobType.TRANSCRIPTION].calls == []
    assert (await service.get(job_id)).status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_failing_job_does_not_affect_siblings(service, processor, executors, create_job):
    executors[JobType.TRANSCRIPTION].outcomes = [InvalidInputError("bad audio")]
    broken = await create_job(JobType.TRANSCRIPTION)
    healthy = await create_job(JobType.SPEECH_SYNTHESIS)

    summary = await processor.process_batch()

    assert summary.failed_jobs == [broken]
    assert summary.processed_jobs == [healthy]
    assert (await service.get(healthy)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_unexpected_claim_error_is_isolated(store, clock, registry, executors, create_job):
    class FlakyClaimService(JobService):
        async def claim(self, job_id, expected_seconds=None):
            if job_id == broken:
                raise RuntimeError("connection dropped")
            return await super().claim(job_id, expected_seconds)

    broken = await create_job(JobType.TRANSCRIPTION)
    healthy = await create_job(JobType.SPEECH_SYNTHESIS)

    summary = await JobProcessor(FlakyClaimService(store, clock=clock), registry).process_batch()

    assert summary.errors == [f"{broken}: connection dropped"]
    assert summary.processed_jobs == [healthy]
    assert executors[JobType.TRANSCRIPTION].calls == []


class YieldingStore(InMemoryJobStore):
    """Lets a concurrent batch list the same jobs before either claims them."""

    async def list_eligible(self, now, limit, job_types=None):
        jobs = await super().list_eligible(now, limit, job_types)
        await asyncio.sleep(0)
        return jobs


@pytest.mark.asyncio
async def test_concurrent_batches_run_a_job_once(clock, registry, executors):
    service = JobService(YieldingStore(), clock=clock)
    job_id = await service.create(
        owner_id="user-1",
        organization_id="org-1",
        job_type=JobType.TRANSCRIPTION,
        input={"audioUrl": "https://files.example.com/audio.webm"},
    )

    first, second = await asyncio.gather(
        JobProcessor(service, registry).process_batch(),
        JobProcessor(service, registry).process_batch(),
    )

    assert executors[JobType.TRANSCRIPTION].calls == [job_id]
    assert sorted(first.processed_jobs + second.processed_jobs) == [job_id]
    assert first.skipped_jobs + second.skipped_jobs == [job_id]
    assert (await service.get(job_id)).status == JobStatus.COMPLETED
