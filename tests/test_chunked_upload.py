import asyncio
import json

import httpx
import pytest

from app.core.errors import UploadCancelledError, UploadError, UploadValidationError
from app.core.retry import RetryPolicy
from app.uploads.chunked import ChunkedUploader, UploadLimits, upload_with_retry

ENDPOINT = "https://app.example.com/api/v1/storage/upload"


async def _no_sleep(delay):
    return None


NO_WAIT = RetryPolicy(max_attempts=3, sleep=_no_sleep)


class FakeUploadServer:
    """Mock transport handler speaking the upload session protocol."""

    def __init__(self, chunk_failures=None):
        self.requests = []
        self.chunks = []
        self.chunk_failures = dict(chunk_failures or {})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/init"):
            body = json.loads(request.content)
            assert body["fileName"] and body["fileSize"] > 0
            return httpx.Response(200, json={"sessionId": "session-1", "uploadUrl": "/api/v1/storage/upload/chunk"})
        if path.endswith("/chunk"):
            attempt = len(self.chunks)
            status = self.chunk_failures.pop(attempt, None)
            if status is not None:
                return httpx.Response(status, json={"error": "chunk failed"})
            self.chunks.append(request.content)
            return httpx.Response(200, json={"success": True})
        if path.endswith("/finalize"):
            return httpx.Response(200, json={"url": "https://cdn.example.com/final.mp4", "path": "user-1/session-1_final.mp4"})
        return httpx.Response(200, json={"url": "https://cdn.example.com/small.mp4", "path": "user-1/small.mp4"})

    def paths(self):
        return [r.url.path.rsplit("/", 1)[-1] for r in self.requests]


@pytest.fixture
def video(tmp_path):
    def _write(size, name="clip.mp4"):
        path = tmp_path / name
        blocks = [bytes([ord("a") + i % 26]) * 1000 for i in range(size // 1000 + 1)]
        path.write_bytes(b"".join(blocks)[:size])
        return str(path)

    return _write


def test_total_chunks():
    uploader = ChunkedUploader(httpx.AsyncClient(), chunk_size=1000)
    assert uploader.total_chunks(1000) == 1
    assert uploader.total_chunks(1001) == 2
    assert uploader.total_chunks(2500) == 3


@pytest.mark.asyncio
async def test_small_file_goes_up_in_one_request(video):
    server = FakeUploadServer()
    progress = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
        uploader = ChunkedUploader(client, chunk_size=1000, on_progress=progress.append)
        result = await uploader.upload(video(400), ENDPOINT, metadata={"title": "Intro"})

    assert server.paths() == ["upload"]
    assert b"Intro" in server.requests[0].content
    assert result.total_chunks == 1
    assert result.path == "user-1/small.mp4"
    assert progress == [100]


@pytest.mark.asyncio
async def test_large_file_uses_session_protocol(video):
    server = FakeUploadServer()
    progress = []
    completed = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
        uploader = ChunkedUploader(
            client,
            chunk_size=1000,
            on_progress=progress.append,
            on_chunk_complete=lambda index, total: completed.append((index, total)),
            max_concurrency=1,
            chunk_retry=NO_WAIT,
        )
        result = await uploader.upload(video(2500), ENDPOINT)

    assert server.paths() == ["init", "chunk", "chunk", "chunk", "finalize"]
    assert server.requests[1].url == "https://app.example.com/api/v1/storage/upload/chunk"
    assert b"a" * 1000 in server.chunks[0]
    assert b"b" * 1000 in server.chunks[1]
    assert b"c" * 500 in server.chunks[2]
    assert json.loads(server.requests[-1].content) == {"sessionId": "session-1"}
    assert result.total_chunks == 3
    assert result.url == "https://cdn.example.com/final.mp4"
    assert progress == [33, 67, 100]
    assert completed == [(0, 3), (1, 3), (2, 3)]


@pytest.mark.asyncio
async def test_progress_is_monotonic_with_concurrency(video):
    server = FakeUploadServer()
    progress = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
        uploader = ChunkedUploader(client, chunk_size=100, on_progress=progress.append, chunk_retry=NO_WAIT)
        result = await uploader.upload(video(950), ENDPOINT)

    assert result.total_chunks == 10
    assert progress == sorted(progress)
    assert progress[-1] == 100


@pytest.mark.asyncio
async def test_failed_chunk_is_retried_alone(video):
    server = FakeUploadServer(chunk_failures={1: 503})
    async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
        uploader = ChunkedUploader(client, chunk_size=1000, max_concurrency=1, chunk_retry=NO_WAIT)
        result = await uploader.upload(video(2500), ENDPOINT)

    assert server.paths().count("chunk") == 4
    assert server.paths().count("init") == 1
    assert len(server.chunks) == 3
    assert result.total_chunks == 3


@pytest.mark.asyncio
async def test_client_error_is_not_retried(video):
    server = FakeUploadServer(chunk_failures={0: 400})
    async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
        uploader = ChunkedUploader(client, chunk_size=1000, max_concurrency=1, chunk_retry=NO_WAIT)
        with pytest.raises(UploadError) as excinfo:
            await uploader.upload(video(2500), ENDPOINT)

    assert excinfo.value.retryable is False
    assert excinfo.value.status_code == 400
    assert "finalize" not in server.paths()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "size,name,limits",
    [
        (0, "empty.mp4", UploadLimits()),
        (500, "big.mp4", UploadLimits(max_bytes=100)),
        (500, "notes.txt", UploadLimits()),
    ],
)
async def test_validation_happens_before_any_request(video, size, name, limits):
    server = FakeUploadServer()
    async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
        uploader = ChunkedUploader(client, chunk_size=1000, limits=limits)
        with pytest.raises(UploadValidationError) as excinfo:
            await uploader.upload(video(size, name), ENDPOINT)

    assert excinfo.value.retryable is False
    assert server.requests == []


@pytest.mark.asyncio
async def test_missing_file_is_rejected(tmp_path):
    async with httpx.AsyncClient() as client:
        uploader = ChunkedUploader(client)
        with pytest.raises(UploadValidationError):
            await uploader.upload(str(tmp_path / "nope.mp4"), ENDPOINT)


@pytest.mark.asyncio
async def test_cancel_aborts_in_flight_chunks(video):
    arrived = asyncio.Event()
    never = asyncio.Event()
    requests = []

    async def handler(request):
        requests.append(request.url.path)
        if request.url.path.endswith("/init"):
            return httpx.Response(200, json={"sessionId": "session-1", "uploadUrl": "/api/v1/storage/upload/chunk"})
        arrived.set()
        await never.wait()
        return httpx.Response(200, json={})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        uploader = ChunkedUploader(client, chunk_size=1000, chunk_retry=NO_WAIT)
        task = asyncio.create_task(uploader.upload(video(2500), ENDPOINT))
        await asyncio.wait_for(arrived.wait(), timeout=2)

        uploader.cancel()
        with pytest.raises(UploadCancelledError) as excinfo:
            await task

    assert excinfo.value.retryable is False
    assert uploader.cancelled
    assert not any(p.endswith("/finalize") for p in requests)


@pytest.mark.asyncio
async def test_upload_with_retry_restarts_after_transient_failure(video):
    server = FakeUploadServer()
    failures = [503]

    def handler(request):
        if request.url.path.endswith("/init") and failures:
            return httpx.Response(failures.pop(), json={"error": "busy"})
        return server(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        uploader = ChunkedUploader(client, chunk_size=1000, chunk_retry=NO_WAIT)
        result = await upload_with_retry(uploader, video(2500), ENDPOINT, policy=NO_WAIT)

    assert result.total_chunks == 3
    assert server.paths().count("init") == 1


@pytest.mark.asyncio
async def test_chunks_are_read_in_the_executor(video, monkeypatch):
    loop = asyncio.get_running_loop()
    submitted = []
    run_in_executor = loop.run_in_executor

    def recording(executor, fn, *args):
        submitted.append(fn.__name__)
        return run_in_executor(executor, fn, *args)

    monkeypatch.setattr(loop, "run_in_executor", recording)
    server = FakeUploadServer()
    async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
        uploader = ChunkedUploader(client, chunk_size=1000, chunk_retry=NO_WAIT)
        await uploader.upload(video(2500), ENDPOINT)

    assert submitted.count("_read_chunk") == 3
