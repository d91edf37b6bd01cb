from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from pydantic import BaseModel

from app.jobs.executors.base import JobExecutor
from app.jobs.executors.registry import ExecutorRegistry
from app.jobs.models import JOB_OUTPUT_MODELS, Job, JobType
from app.jobs.service import JobService
from app.jobs.store import InMemoryJobStore


class Clock:
    """Manually advanced clock handed to JobService."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedExecutor(JobExecutor):
    """Executor whose behaviour is set per test.

    ``outcomes`` is consumed one entry per call: an exception instance is
    raised, anything else is returned as output. When exhausted the default
    output of the job type is returned.
    """

    def __init__(self, job_type: JobType, outcomes: Optional[List[Any]] = None, timeout_seconds: float = 5.0):
        self.job_type = job_type
        self.timeout_seconds = timeout_seconds
        self.outcomes = list(outcomes or [])
        self.calls: List[str] = []
        self.progress_steps = [50]

    def default_output(self) -> BaseModel:
        samples: Dict[JobType, Dict[str, Any]] = {
            JobType.TRANSCRIPTION: {"transcript": "hello world"},
            JobType.DOCUMENT_GENERATION: {"chapters": [], "sop": "# SOP", "key_points": ["one"]},
            JobType.MEDIA_UPLOAD: {"playback_id": "pb-1", "asset_id": "asset-1", "status": "ready"},
            JobType.SPEECH_SYNTHESIS: {"audio_data": "AAAA", "format": "mp3"},
            JobType.ANSWER_EVALUATION: {"evaluation": "Good answer"},
        }
        return JOB_OUTPUT_MODELS[self.job_type].model_validate(samples[self.job_type])

    async def execute(self, job: Job, payload: BaseModel, progress) -> BaseModel:
        self.calls.append(job.id)
        for step in self.progress_steps:
            await progress(step, f"step {step}")
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                return await outcome(job, progress)
            return outcome
        return self.default_output()


VALID_INPUTS: Dict[JobType, Dict[str, Any]] = {
    JobType.TRANSCRIPTION: {"audioUrl": "https://files.example.com/audio.webm"},
    JobType.DOCUMENT_GENERATION: {"title": "Forklift safety", "transcript": "Check the forks.", "duration": 120},
    JobType.MEDIA_UPLOAD: {"videoUrl": "https://files.example.com/video.mp4"},
    JobType.SPEECH_SYNTHESIS: {"text": "Welcome to the course"},
    JobType.ANSWER_EVALUATION: {
        "question": "What do you check first?",
        "answer": "The forks",
        "transcript": "Check the forks.",
    },
}


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def service(store, clock):
    return JobService(store, default_max_retries=3, clock=clock)


@pytest.fixture
def executors():
    return {t: ScriptedExecutor(t) for t in JobType}


@pytest.fixture
def registry(executors):
    return ExecutorRegistry(executors.values())


@pytest.fixture
def create_job(service):
    async def _create(job_type: JobType = JobType.TRANSCRIPTION, **kwargs) -> str:
        kwargs.setdefault("owner_id", "user-1")
        kwargs.setdefault("organization_id", "org-1")
        kwargs.setdefault("input", VALID_INPUTS[job_type])
        return await service.create(job_type=job_type, **kwargs)

    return _create


@pytest.fixture
def valid_inputs():
    return VALID_INPUTS
