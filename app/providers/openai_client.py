"""Minimal async client for the OpenAI speech and chat endpoints."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from app.core.errors import TransientExternalError, UnauthorizedError
from app.core.retry import RetryPolicy, retry_async
from app.providers.http import send

logger = logging.getLogger(__name__)

PROVIDER = "openai"


class OpenAIClient:
    """Transcription, chat completion and text-to-speech over httpx.

    Transcription and completion requests are retried with backoff at the
    call site; a job-level retry is still scheduled by the processor when
    these attempts run out.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 120.0,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._retry = retry_policy or RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=10.0)

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise UnauthorizedError("OPENAI_API_KEY is not configured")
        return {"Authorization": f"Bearer {self._api_key}"}

    async def transcribe(
        self,
        audio: bytes,
        filename: str,
        content_type: str,
        model: str = "whisper-1",
    ) -> str:
        headers = self._headers()

        async def _call() -> str:
            response = await send(
                self._client,
                "POST",
                f"{self._base_url}/audio/transcriptions",
                PROVIDER,
                headers=headers,
                files={"file": (filename, audio, content_type)},
                data={"model": model, "response_format": "text"},
            )
            return _normalize_transcription(response)

        return await retry_async(_call, self._retry)

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = "gpt-4o",
        json_mode: bool = False,
    ) -> str:
        """Return the content of the first completion choice ('' when absent)."""
        headers = self._headers()
        body: Dict[str, Any] = {"model": model, "messages": messages}
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        async def _call() -> str:
            response = await send(
                self._client,
                "POST",
                f"{self._base_url}/chat/completions",
                PROVIDER,
                headers=headers,
                json=body,
            )
            try:
                payload = response.json()
            except ValueError as e:
                raise TransientExternalError("Chat completion returned invalid JSON") from e
            choices = payload.get("choices") or []
            if not choices:
                return ""
            return (choices[0].get("message") or {}).get("content") or ""

        return await retry_async(_call, self._retry)

    async def speech(self, text: str, voice: str = "alloy", model: str = "tts-1") -> bytes:
        response = await send(
            self._client,
            "POST",
            f"{self._base_url}/audio/speech",
            PROVIDER,
            headers=self._headers(),
            json={"model": model, "voice": voice, "input": text},
        )
        return response.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _normalize_transcription(response: httpx.Response) -> str:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = response.json()
        except ValueError:
            return response.text.strip()
        if isinstance(payload, dict) and isinstance(payload.get("text"), str):
            return payload["text"].strip()
        return ""
    return response.text.strip()
