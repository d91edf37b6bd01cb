"""Job record data model and the typed payloads of each job type."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Type
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
import uuid

from app.core.errors import InvalidInputError, error_message


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    TRANSCRIPTION = "transcription"
    DOCUMENT_GENERATION = "document_generation"
    MEDIA_UPLOAD = "media_upload"
    SPEECH_SYNTHESIS = "speech_synthesis"
    ANSWER_EVALUATION = "answer_evaluation"


# Values older rows of background_jobs still carry
LEGACY_JOB_TYPES: Dict[str, JobType] = {
    "sop_generation": JobType.DOCUMENT_GENERATION,
    "mux_upload": JobType.MEDIA_UPLOAD,
    "tts_generation": JobType.SPEECH_SYNTHESIS,
    "checkpoint_evaluation": JobType.ANSWER_EVALUATION,
}


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
CANCELLABLE_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.RETRYING}
)
CLAIMABLE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.PENDING, JobStatus.RETRYING})

# status -> statuses it may move to
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.RETRYING, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.RETRYING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

# 1 = most urgent, 10 = least
DEFAULT_PRIORITIES: Dict[JobType, int] = {
    JobType.TRANSCRIPTION: 3,
    JobType.DOCUMENT_GENERATION: 4,
    JobType.ANSWER_EVALUATION: 5,
    JobType.MEDIA_UPLOAD: 6,
    JobType.SPEECH_SYNTHESIS: 7,
}

# Business-entity back-references a job may carry.
ENTITY_FIELDS = ("training_module_id", "assignment_id")


class JobError(BaseModel):
    """Error payload stored on a failed job."""
    message: str
    cause: Optional[str] = None
    code: Optional[str] = None
    retryable: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "JobError":
        return cls(
            message=error_message(exc),
            cause=type(exc).__name__,
            code=getattr(exc, "code", None),
            retryable=bool(getattr(exc, "retryable", False)),
        )


class Job(BaseModel):
    """Tracks the lifecycle of one unit of deferred work."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    organization_id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    priority: int = Field(default=5, ge=1, le=10)
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[JobError] = None
    progress_percent: int = Field(default=0, ge=0, le=100)
    progress_message: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    next_retry_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    training_module_id: Optional[str] = None
    assignment_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_claimable(self, now: datetime) -> bool:
        if self.status == JobStatus.PENDING:
            return True
        if self.status == JobStatus.RETRYING:
            return self.next_retry_at is None or self.next_retry_at <= now
        return False


class JobStatusView(BaseModel):
    """Client-facing status of a job, as served by GET /api/v1/jobs/{id}.

    Output is only exposed once the job is completed and the error payload
    only once it has failed.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: JobType = Field(alias="jobType")
    status: JobStatus
    progress_percent: int = Field(default=0, alias="progressPercentage")
    progress_message: Optional[str] = Field(default=None, alias="progressMessage")
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = Field(default=None, alias="estimatedCompletion")
    output: Optional[Dict[str, Any]] = Field(default=None, alias="outputData")
    error: Optional[JobError] = Field(default=None, alias="errorData")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_job(cls, job: "Job") -> "JobStatusView":
        return cls(
            id=job.id,
            type=job.type,
            status=job.status,
            progress_percent=job.progress_percent,
            progress_message=job.progress_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            next_retry_at=job.next_retry_at,
            estimated_completion=job.estimated_completion,
            output=job.output if job.status == JobStatus.COMPLETED else None,
            error=job.error if job.status == JobStatus.FAILED else None,
        )


# ---------------------------------------------------------------------------
# Typed payloads per job type
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)


class TranscriptionInput(_Payload):
    audio_url: str = Field(
        min_length=1,
        validation_alias=AliasChoices("audio_url", "audioUrl", "audioFileUrl"),
    )


class TranscriptionOutput(_Payload):
    transcript: str


class DocumentGenerationInput(_Payload):
    title: str = Field(min_length=1)
    transcript: str = Field(min_length=1)
    duration: float = Field(gt=0, description="Video duration in seconds")


class Chapter(_Payload):
    title: str
    start_time: float
    end_time: float
    quiz_question: Optional[str] = None


class DocumentGenerationOutput(_Payload):
    chapters: List[Chapter] = Field(default_factory=list)
    sop: str = ""
    key_points: List[str] = Field(default_factory=list)


class MediaUploadInput(_Payload):
    video_url: str = Field(
        min_length=1,
        validation_alias=AliasChoices("video_url", "videoUrl"),
    )


class MediaUploadOutput(_Payload):
    playback_id: str
    asset_id: str
    status: str


class SpeechSynthesisInput(_Payload):
    text: str = Field(min_length=1)
    voice: str = "alloy"


class SpeechSynthesisOutput(_Payload):
    audio_data: str
    format: str = "mp3"


class AnswerEvaluationInput(_Payload):
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    transcript: str = Field(min_length=1)


class AnswerEvaluationOutput(_Payload):
    evaluation: str


JOB_INPUT_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.TRANSCRIPTION: TranscriptionInput,
    JobType.DOCUMENT_GENERATION: DocumentGenerationInput,
    JobType.MEDIA_UPLOAD: MediaUploadInput,
    JobType.SPEECH_SYNTHESIS: SpeechSynthesisInput,
    JobType.ANSWER_EVALUATION: AnswerEvaluationInput,
}

JOB_OUTPUT_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.TRANSCRIPTION: TranscriptionOutput,
    JobType.DOCUMENT_GENERATION: DocumentGenerationOutput,
    JobType.MEDIA_UPLOAD: MediaUploadOutput,
    JobType.SPEECH_SYNTHESIS: SpeechSynthesisOutput,
    JobType.ANSWER_EVALUATION: AnswerEvaluationOutput,
}


def parse_input(
    job_type: JobType,
    data: Optional[Dict[str, Any]],
    model: Optional[Type[BaseModel]] = None,
) -> BaseModel:
    """Validate a raw input payload against ``model``, by default the one registered for ``job_type``."""
    model = model or JOB_INPUT_MODELS[JobType(job_type)]
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidInputError(
            f"Invalid input for {JobType(job_type).value} job: {problems}",
            context={"job_type": JobType(job_type).value},
        ) from e
