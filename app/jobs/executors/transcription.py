"""Speech-to-text for recorded training audio."""

import mimetypes
from typing import Optional

import httpx

from app.core.errors import TransientExternalError
from app.db.training_modules import TrainingModuleWriter
from app.jobs.executors.base import JobExecutor, ProgressCallback
from app.jobs.models import Job, JobType, TranscriptionInput, TranscriptionOutput
from app.providers.http import download
from app.providers.openai_client import OpenAIClient

# Containers the transcription endpoint accepts
SUPPORTED_EXTENSIONS = frozenset({"flac", "m4a", "mp3", "mp4", "mpeg", "mpga", "oga", "ogg", "wav", "webm"})
_ALIASES = {"mov": "mp4", "qt": "mp4", "m4v": "mp4", "weba": "webm"}


def audio_extension(content_type: str) -> str:
    """File extension to name an upload of ``content_type`` by, ``webm`` when unknown."""
    mime = content_type.split(";")[0].strip().lower()
    subtype = mime.partition("/")[2]
    guessed = (mimetypes.guess_extension(mime) or "").lstrip(".")
    for candidate in (subtype, guessed, _ALIASES.get(guessed)):
        if candidate in SUPPORTED_EXTENSIONS:
            return candidate
    return "webm"


class TranscriptionExecutor(JobExecutor):
    job_type = JobType.TRANSCRIPTION

    def __init__(
        self,
        openai: OpenAIClient,
        http: httpx.AsyncClient,
        training_modules: Optional[TrainingModuleWriter] = None,
        timeout_seconds: float = 300.0,
    ):
        self._openai = openai
        self._http = http
        self._training_modules = training_modules
        self.timeout_seconds = timeout_seconds

    async def execute(
        self,
        job: Job,
        payload: TranscriptionInput,
        progress: ProgressCallback,
    ) -> TranscriptionOutput:
        await progress(25, "Downloading audio file...")
        audio, content_type = await download(self._http, payload.audio_url)
        if not content_type.startswith(("audio/", "video/")):
            content_type = "audio/webm"
        extension = audio_extension(content_type)

        await progress(50, "Transcribing audio...")
        transcript = await self._openai.transcribe(
            audio, f"audio-{job.id}.{extension}", content_type
        )
        if not transcript:
            raise TransientExternalError("Transcription result was empty")

        if job.training_module_id and self._training_modules:
            await self._training_modules.update(job.training_module_id, {"transcript": transcript})

        await progress(100, "Transcription complete")
        return TranscriptionOutput(transcript=transcript)
