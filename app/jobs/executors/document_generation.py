"""Transcript -> chapters, step-by-step SOP and key points.

The model is asked for a JSON object; its answer is never trusted as-is.
Chapters that fail validation are dropped, every chapter time is clamped into
the video's duration, and the last chapter is stretched to end exactly at the
end of the video.
"""

import json
import logging
from typing import Any, List, Optional

from app.core.errors import TransientExternalError
from app.db.training_modules import TrainingModuleWriter
from app.jobs.executors.base import JobExecutor, ProgressCallback
from app.jobs.models import (
    Chapter,
    DocumentGenerationInput,
    DocumentGenerationOutput,
    Job,
    JobType,
)
from app.providers.openai_client import OpenAIClient

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert training documentation specialist.
Convert this training video transcript into:

1. Chapter titles (break the video into logical sections based on topic changes)
2. A clear, step-by-step SOP in markdown format with headers, bullet points, and numbered steps
3. 5-7 key points employees must remember

Format your response as JSON with this structure:
{
  "chapters": [
    {
      "title": "Chapter Title",
      "start_time": 0,
      "end_time": 60,
      "quiz_question": "A specific question to test understanding of THIS chapter's content"
    }
  ],
  "sop": "Markdown formatted SOP content",
  "keyPoints": ["Key point 1", "Key point 2"]
}

IMPORTANT:
- Chapter end_time values MUST NOT exceed the video duration
- The last chapter's end_time should equal the video duration
- Create 2-4 chapters for short videos (under 3 minutes)
- Chapters should align with natural topic breaks in the content"""


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def _number(value: Any) -> Optional[float]:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value:
        return None
    return float(value)


def sanitize_chapter(raw: Any, index: int, duration: float) -> Optional[Chapter]:
    """Validate one chapter and clamp its times into [0, duration]."""
    if not isinstance(raw, dict):
        logger.warning("Skipping invalid chapter at index %d", index)
        return None

    title = raw.get("title")
    start = _number(raw.get("start_time"))
    end = _number(raw.get("end_time"))
    if not isinstance(title, str) or not title.strip() or start is None or end is None:
        logger.warning("Skipping chapter at index %d: missing title or times", index)
        return None

    start = _clamp(start, 0.0, duration)
    end = _clamp(end, start, duration)
    quiz = raw.get("quiz_question")
    return Chapter(
        title=title.strip(),
        start_time=start,
        end_time=end,
        quiz_question=quiz.strip() if isinstance(quiz, str) and quiz.strip() else None,
    )


def parse_document(content: Optional[str], duration: float) -> DocumentGenerationOutput:
    if not content:
        raise TransientExternalError("AI response did not include SOP content")
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise TransientExternalError(f"Failed to parse SOP response as JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise TransientExternalError("SOP response was not a JSON object")

    raw_chapters = parsed.get("chapters")
    chapters: List[Chapter] = []
    for index, raw in enumerate(raw_chapters if isinstance(raw_chapters, list) else []):
        chapter = sanitize_chapter(raw, index, duration)
        if chapter is not None:
            chapters.append(chapter)
    if chapters:
        chapters[-1].end_time = duration

    sop = parsed.get("sop")
    raw_points = parsed.get("keyPoints", parsed.get("key_points"))
    key_points = [
        p.strip() for p in (raw_points if isinstance(raw_points, list) else [])
        if isinstance(p, str) and p.strip()
    ]
    return DocumentGenerationOutput(
        chapters=chapters,
        sop=sop if isinstance(sop, str) else "",
        key_points=key_points,
    )


class DocumentGenerationExecutor(JobExecutor):
    job_type = JobType.DOCUMENT_GENERATION

    def __init__(
        self,
        openai: OpenAIClient,
        training_modules: Optional[TrainingModuleWriter] = None,
        model: str = "gpt-4o",
        timeout_seconds: float = 180.0,
    ):
        self._openai = openai
        self._training_modules = training_modules
        self._model = model
        self.timeout_seconds = timeout_seconds

    async def execute(
        self,
        job: Job,
        payload: DocumentGenerationInput,
        progress: ProgressCallback,
    ) -> DocumentGenerationOutput:
        duration = payload.duration
        await progress(20, "Generating chapters...")
        content = await self._openai.chat(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Training Title: {payload.title}\n"
                        f"Video Duration: {duration:g} seconds\n"
                        f"Transcript:\n{payload.transcript}\n\n"
                        f"Create chapters that fit within the {duration:g} second video duration."
                    ),
                },
            ],
            model=self._model,
            json_mode=True,
        )

        await progress(80, "Processing AI response...")
        document = parse_document(content, duration)

        if job.training_module_id and self._training_modules:
            await self._training_modules.update(
                job.training_module_id,
                {
                    "chapters": [c.model_dump(exclude_none=True) for c in document.chapters],
                    "sop": document.sop,
                    "key_points": document.key_points,
                },
            )

        await progress(100, "SOP generation complete")
        return document
