"""Chunked, resumable upload client for large training videos.

Files at or below ``chunk_size`` go up in one multipart POST to the endpoint.
Larger files use a three-step session against the same endpoint:

    POST {endpoint}/init       -> {sessionId, uploadUrl}
    POST {uploadUrl}           one multipart request per chunk
    POST {endpoint}/finalize   -> {url, path}

Each chunk is retried on its own with exponential backoff, so a flaky
connection costs one chunk rather than the whole file. Either way the caller
gets one :class:`UploadResult`.
"""

import asyncio
import logging
import math
import mimetypes
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Tuple

import httpx

from app.core.errors import (
    UploadCancelledError,
    UploadError,
    UploadValidationError,
    is_retryable_status,
)
from app.core.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_MAX_BYTES = 100 * 1024 * 1024


@dataclass(frozen=True)
class UploadLimits:
    max_bytes: int = DEFAULT_MAX_BYTES
    # Content-type prefixes ("video/") or exact types ("application/mp4")
    allowed_content_types: Tuple[str, ...] = ("video/", "audio/")

    def validate(self, path: str, size: int, content_type: str) -> None:
        if size <= 0:
            raise UploadValidationError(f"File {os.path.basename(path)} is empty")
        if size > self.max_bytes:
            raise UploadValidationError(
                f"File size exceeds maximum limit of {self.max_bytes // (1024 * 1024)}MB",
                context={"file_size": size, "max_bytes": self.max_bytes},
            )
        if self.allowed_content_types and not any(
            content_type == allowed or (allowed.endswith("/") and content_type.startswith(allowed))
            for allowed in self.allowed_content_types
        ):
            raise UploadValidationError(
                f"File type {content_type} is not allowed",
                context={"content_type": content_type},
            )


@dataclass
class UploadResult:
    url: str
    path: str
    total_chunks: int
    elapsed_time: float


class ChunkedUploader:
    """Uploads one file at a time; ``cancel()`` aborts it for good."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        limits: Optional[UploadLimits] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        on_chunk_complete: Optional[Callable[[int, int], None]] = None,
        max_concurrency: int = 3,
        chunk_retry: Optional[RetryPolicy] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._client = client
        self._chunk_size = chunk_size
        self._limits = limits or UploadLimits()
        self._on_progress = on_progress
        self._on_chunk_complete = on_chunk_complete
        self._max_concurrency = max(1, max_concurrency)
        self._chunk_retry = chunk_retry or RetryPolicy(max_attempts=3, initial_delay=2.0, max_delay=10.0)
        self._headers = headers or {}
        self._inflight: Set[asyncio.Future] = set()
        self._cancelled = False
        self._progress = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Abort every in-flight request; the pending upload raises UploadCancelledError."""
        self._cancelled = True
        for task in list(self._inflight):
            task.cancel()

    def total_chunks(self, size: int) -> int:
        return max(1, math.ceil(size / self._chunk_size))

    async def upload(
        self,
        file_path: str,
        endpoint: str,
        metadata: Optional[Dict[str, Any]] = None,
        content_type: Optional[str] = None,
    ) -> UploadResult:
        started = time.monotonic()
        file_path = os.fspath(file_path)
        if not os.path.isfile(file_path):
            raise UploadValidationError(f"File not found: {file_path}")
        size = os.path.getsize(file_path)
        content_type = content_type or mimetypes.guess_type(file_path)[0] or "application/octet-stream"
        self._limits.validate(file_path, size, content_type)
        self._raise_if_cancelled()

        self._progress = 0
        total = self.total_chunks(size)
        if total == 1:
            url, path = await self._upload_single(file_path, endpoint, content_type, metadata)
        else:
            url, path = await self._upload_chunked(file_path, size, total, endpoint, content_type, metadata)

        elapsed = time.monotonic() - started
        logger.info("Uploaded %s (%d bytes, %d chunk(s)) in %.2fs", path, size, total, elapsed)
        return UploadResult(url=url, path=path, total_chunks=total, elapsed_time=elapsed)

    # ------------------------------------------------------------------

    async def _upload_single(
        self,
        file_path: str,
        endpoint: str,
        content_type: str,
        metadata: Optional[Dict[str, Any]],
    ) -> Tuple[str, str]:
        content = await self._read(file_path, 0, self._chunk_size)
        data = {key: str(value) for key, value in (metadata or {}).items()}
        response = await self._request(
            "POST",
            endpoint,
            files={"file": (os.path.basename(file_path), content, content_type)},
            data=data,
        )
        body = self._json(response)
        self._report(1, 1)
        if self._on_chunk_complete:
            self._on_chunk_complete(0, 1)
        return self._result_location(body)

    async def _upload_chunked(
        self,
        file_path: str,
        size: int,
        total: int,
        endpoint: str,
        content_type: str,
        metadata: Optional[Dict[str, Any]],
    ) -> Tuple[str, str]:
        base = endpoint.rstrip("/")
        upload_id = f"upload-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        session = self._json(await self._request(
            "POST",
            f"{base}/init",
            json={
                "fileName": os.path.basename(file_path),
                "fileSize": size,
                "fileType": content_type,
                "uploadId": upload_id,
                "metadata": metadata or {},
            },
        ))
        session_id = session.get("sessionId")
        if not session_id:
            raise UploadError("Upload session response did not include a sessionId")
        upload_url = str(httpx.URL(base).join(session.get("uploadUrl") or f"{base}/chunk"))

        semaphore = asyncio.Semaphore(self._max_concurrency)
        completed = 0

        async def _send_chunk(index: int) -> None:
            nonlocal completed
            async with semaphore:
                await retry_async(
                    lambda: self._upload_chunk(file_path, index, upload_url, session_id, content_type),
                    self._chunk_retry,
                )
            completed += 1
            self._report(completed, total)
            if self._on_chunk_complete:
                self._on_chunk_complete(index, total)

        tasks = [asyncio.ensure_future(_send_chunk(i)) for i in range(total)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        body = self._json(await self._request("POST", f"{base}/finalize", json={"sessionId": session_id}))
        return self._result_location(body)

    async def _upload_chunk(
        self,
        file_path: str,
        index: int,
        upload_url: str,
        session_id: str,
        content_type: str,
    ) -> None:
        chunk = await self._read(file_path, index * self._chunk_size, self._chunk_size)
        await self._request(
            "POST",
            upload_url,
            files={"chunk": (f"chunk-{index:06d}", chunk, content_type)},
            data={"chunkIndex": str(index), "sessionId": session_id},
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        self._raise_if_cancelled()
        headers = {**self._headers, **kwargs.pop("headers", {})}
        task = asyncio.ensure_future(self._client.request(method, url, headers=headers, **kwargs))
        self._inflight.add(task)
        try:
            response = await task
        except asyncio.CancelledError:
            if self._cancelled:
                raise UploadCancelledError("Upload cancelled by user") from None
            raise
        except httpx.TimeoutException as e:
            raise UploadError(f"Upload timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise UploadError(f"Network error during upload: {e}", retryable=True) from e
        finally:
            self._inflight.discard(task)

        if not response.is_success:
            status = response.status_code
            raise UploadError(
                f"Upload request to {url} failed: {status}",
                retryable=is_retryable_status(status),
                status_code=status,
                context={"url": url},
            )
        return response

    def _raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise UploadCancelledError("Upload cancelled by user")

    def _report(self, done: int, total: int) -> None:
        percent = min(100, round(done / total * 100))
        if percent < self._progress:
            return
        self._progress = percent
        if self._on_progress:
            self._on_progress(percent)

    async def _read(self, file_path: str, offset: int, length: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_chunk, file_path, offset, length)

    @staticmethod
    def _read_chunk(file_path: str, offset: int, length: int) -> bytes:
        try:
            with open(file_path, "rb") as fh:
                fh.seek(offset)
                return fh.read(length)
        except OSError as e:
            raise UploadError(f"Failed to read {file_path}: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise UploadError("Upload endpoint returned invalid JSON") from e
        if not isinstance(body, dict):
            raise UploadError("Upload endpoint returned an unexpected payload")
        return body

    @staticmethod
    def _result_location(body: Dict[str, Any]) -> Tuple[str, str]:
        url, path = body.get("url"), body.get("path")
        if not url or not path:
            raise UploadError("Upload response did not include url and path")
        return url, path


async def upload_with_retry(
    uploader: ChunkedUploader,
    file_path: str,
    endpoint: str,
    metadata: Optional[Dict[str, Any]] = None,
    content_type: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
) -> UploadResult:
    """Retry a whole upload on retryable failures; validation and 4xx errors propagate at once."""
    return await retry_async(
        lambda: uploader.upload(file_path, endpoint, metadata, content_type),
        policy,
    )
