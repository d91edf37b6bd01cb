"""Object storage for uploaded training videos.

Chunked uploads are staged as separate objects next to a small JSON manifest
written at session start:

    {user}/{session}.json               manifest (fileName, fileSize, fileType, metadata)
    {user}/{session}_chunk_{index:06d}  one object per chunk
    {user}/{session}_final{ext}         assembled file

Finalizing reads the chunks back in index order, writes the final object and
removes the staging objects.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from supabase import Client

from app.core.errors import InvalidInputError, JobsError, StoreError

logger = logging.getLogger(__name__)

CHUNK_MARKER = "_chunk_"


def _is_not_found(exc: Optional[BaseException]) -> bool:
    detail = exc.args[0] if exc is not None and exc.args else None
    if isinstance(detail, dict):
        if str(detail.get("statusCode")) == "404" or detail.get("error") == "not_found":
            return True
    return exc is not None and "not found" in str(exc).lower()


def chunk_object_path(user_id: str, session_id: str, index: int) -> str:
    return f"{user_id}/{session_id}{CHUNK_MARKER}{index:06d}"


def manifest_object_path(user_id: str, session_id: str) -> str:
    return f"{user_id}/{session_id}.json"


def final_object_path(user_id: str, session_id: str, file_name: str) -> str:
    ext = os.path.splitext(file_name or "")[1].lower()
    return f"{user_id}/{session_id}_final{ext}"


class UploadStorage(ABC):
    """Minimal bucket interface the upload routes need."""

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        ...

    @abstractmethod
    async def get(self, path: str) -> bytes:
        """Raises KeyError when the object does not exist."""

    @abstractmethod
    async def list(self, folder: str, prefix: str) -> List[str]:
        """Names (not full paths) of objects in ``folder`` starting with ``prefix``."""
        ...

    @abstractmethod
    async def remove(self, paths: List[str]) -> None:
        ...

    @abstractmethod
    def public_url(self, path: str) -> str:
        ...

    # Session helpers shared by every backend

    async def write_manifest(self, user_id: str, session_id: str, manifest: Dict[str, Any]) -> None:
        await self.put(
            manifest_object_path(user_id, session_id),
            json.dumps(manifest).encode("utf-8"),
            "application/json",
        )

    async def read_manifest(self, user_id: str, session_id: str) -> Dict[str, Any]:
        try:
            raw = await self.get(manifest_object_path(user_id, session_id))
        except KeyError:
            raise InvalidInputError(f"Unknown upload session {session_id}")
        return json.loads(raw.decode("utf-8"))

    async def assemble(self, user_id: str, session_id: str, max_bytes: int) -> Dict[str, str]:
        """Concatenate the staged chunks of a session into its final object."""
        manifest = await self.read_manifest(user_id, session_id)
        names = sorted(await self.list(user_id, f"{session_id}{CHUNK_MARKER}"))
        if not names:
            raise InvalidInputError(f"Upload session {session_id} has no chunks")

        expected = [f"{session_id}{CHUNK_MARKER}{i:06d}" for i in range(len(names))]
        if names != expected:
            raise InvalidInputError(f"Upload session {session_id} is missing chunks")

        parts = []
        total = 0
        for name in names:
            part = await self.get(f"{user_id}/{name}")
            total += len(part)
            if total > max_bytes:
                raise InvalidInputError(
                    f"File size exceeds maximum limit of {max_bytes // (1024 * 1024)}MB",
                    status_code=413,
                )
            parts.append(part)

        declared = manifest.get("fileSize")
        if declared is not None and int(declared) != total:
            raise InvalidInputError(
                f"Upload session {session_id} received {total} bytes, expected {declared}"
            )

        path = final_object_path(user_id, session_id, manifest.get("fileName", ""))
        await self.put(path, b"".join(parts), manifest.get("fileType") or "application/octet-stream")
        await self.remove([f"{user_id}/{name}" for name in names] + [manifest_object_path(user_id, session_id)])
        logger.info("Assembled upload %s from %d chunk(s), %d bytes", path, len(names), total)
        return {"url": self.public_url(path), "path": path}


class SupabaseUploadStorage(UploadStorage):
    """Supabase Storage bucket, accessed with the service-role client."""

    def __init__(self, client: Client, bucket: str = "training-videos"):
        self._client = client
        self._bucket = bucket

    def _bucket_api(self):
        return self._client.storage.from_(self._bucket)

    async def _run(self, fn, *args, description: str):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: fn(*args))
        except JobsError:
            raise
        except Exception as e:
            raise StoreError(f"Storage {description} failed: {e}", context={"bucket": self._bucket}) from e

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        options = {"content-type": content_type, "upsert": "true"}
        await self._run(self._bucket_api().upload, path, data, options, description=f"upload of {path}")

    async def get(self, path: str) -> bytes:
        try:
            return await self._run(self._bucket_api().download, path, description=f"download of {path}")
        except StoreError as e:
            if _is_not_found(e.__cause__):
                raise KeyError(path) from e
            raise

    async def list(self, folder: str, prefix: str) -> List[str]:
        entries = await self._run(
            self._bucket_api().list, folder, {"search": prefix, "limit": 10000},
            description=f"listing of {folder}",
        )
        return [e["name"] for e in entries or [] if e.get("name", "").startswith(prefix)]

    async def remove(self, paths: List[str]) -> None:
        if paths:
            await self._run(self._bucket_api().remove, paths, description="removal")

    def public_url(self, path: str) -> str:
        return self._bucket_api().get_public_url(path)


class InMemoryUploadStorage(UploadStorage):
    """Dict-backed bucket for local runs and tests."""

    def __init__(self, base_url: str = "memory://uploads"):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self._base_url = base_url.rstrip("/")

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.objects[path] = bytes(data)
        self.content_types[path] = content_type

    async def get(self, path: str) -> bytes:
        return self.objects[path]

    async def list(self, folder: str, prefix: str) -> List[str]:
        folder = folder.rstrip("/") + "/"
        names = []
        for path in self.objects:
            if not path.startswith(folder):
                continue
            name = path[len(folder):]
            if "/" not in name and name.startswith(prefix):
                names.append(name)
        return names

    async def remove(self, paths: List[str]) -> None:
        for path in paths:
            self.objects.pop(path, None)
            self.content_types.pop(path, None)

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/{path}"


def content_extension(file_name: Optional[str], default: str = ".mp4") -> str:
    return os.path.splitext(file_name or "")[1].lower() or default
