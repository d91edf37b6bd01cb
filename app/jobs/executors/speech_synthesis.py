"""Text-to-speech for narrated checkpoints."""

import base64

from app.core.errors import TransientExternalError
from app.jobs.executors.base import JobExecutor, ProgressCallback
from app.jobs.models import Job, JobType, SpeechSynthesisInput, SpeechSynthesisOutput
from app.providers.openai_client import OpenAIClient


class SpeechSynthesisExecutor(JobExecutor):
    job_type = JobType.SPEECH_SYNTHESIS

    def __init__(self, openai: OpenAIClient, model: str = "tts-1", timeout_seconds: float = 60.0):
        self._openai = openai
        self._model = model
        self.timeout_seconds = timeout_seconds

    async def execute(
        self,
        job: Job,
        payload: SpeechSynthesisInput,
        progress: ProgressCallback,
    ) -> SpeechSynthesisOutput:
        await progress(50, "Generating audio...")
        audio = await self._openai.speech(payload.text, voice=payload.voice, model=self._model)
        if not audio:
            raise TransientExternalError("Speech synthesis returned no audio")
        await progress(100, "TTS generation complete")
        return SpeechSynthesisOutput(
            audio_data=base64.b64encode(audio).decode("ascii"),
            format="mp3",
        )
