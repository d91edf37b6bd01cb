"""Executor registry: one executor per job type, checked at construction."""

from typing import Dict, Iterable, List, Optional

import httpx

from app.config import Settings
from app.db.training_modules import TrainingModuleWriter
from app.jobs.executors.answer_evaluation import AnswerEvaluationExecutor
from app.jobs.executors.base import JobExecutor
from app.jobs.executors.document_generation import DocumentGenerationExecutor
from app.jobs.executors.media_upload import MediaUploadExecutor
from app.jobs.executors.speech_synthesis import SpeechSynthesisExecutor
from app.jobs.executors.transcription import TranscriptionExecutor
from app.jobs.models import JobType
from app.providers.mux_client import MuxClient
from app.providers.openai_client import OpenAIClient


class ExecutorRegistry:
    """Maps every JobType to exactly one executor.

    Construction fails if a job type has no executor or has two, so dispatch
    by type tag can never hit an unhandled case at run time.
    """

    def __init__(self, executors: Iterable[JobExecutor]):
        self._executors: Dict[JobType, JobExecutor] = {}
        for executor in executors:
            if executor.job_type in self._executors:
                raise ValueError(f"Duplicate executor for job type '{executor.job_type.value}'")
            self._executors[executor.job_type] = executor

        missing = [t.value for t in JobType if t not in self._executors]
        if missing:
            raise ValueError(f"No executor registered for job type(s): {', '.join(missing)}")

    def get(self, job_type: JobType) -> JobExecutor:
        return self._executors[JobType(job_type)]

    def job_types(self) -> List[JobType]:
        return list(self._executors)


def build_registry(
    config: Settings,
    openai: OpenAIClient,
    mux: MuxClient,
    http: httpx.AsyncClient,
    training_modules: Optional[TrainingModuleWriter] = None,
) -> ExecutorRegistry:
    """Wire the production executors with their provider clients and timeouts."""
    return ExecutorRegistry([
        TranscriptionExecutor(
            openai, http, training_modules,
            timeout_seconds=config.transcription_timeout_seconds,
        ),
        DocumentGenerationExecutor(
            openai, training_modules,
            timeout_seconds=config.document_generation_timeout_seconds,
        ),
        MediaUploadExecutor(
            mux, training_modules,
            timeout_seconds=config.media_upload_timeout_seconds,
        ),
        SpeechSynthesisExecutor(
            openai, timeout_seconds=config.speech_synthesis_timeout_seconds,
        ),
        AnswerEvaluationExecutor(
            openai, timeout_seconds=config.answer_evaluation_timeout_seconds,
        ),
    ])
