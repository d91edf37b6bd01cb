"""Video upload API backing the chunked uploader.

  POST /storage/upload           single-shot multipart upload (field ``file``)
  POST /storage/upload/init      open a chunked session
  POST /storage/upload/chunk     store one chunk (fields ``chunk``, ``chunkIndex``, ``sessionId``)
  POST /storage/upload/finalize  assemble the chunks into the final object
"""

import logging
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, ConfigDict, Field

from app.api.v1.deps import get_upload_storage
from app.auth.supabase_auth import user_id_of, verify_jwt
from app.config import settings
from app.core.errors import JobsError, api_error, to_http_error
from app.storage.uploads import UploadStorage, chunk_object_path, content_extension

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/storage/upload")

_READ_SIZE = 1024 * 1024


class UploadInitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName", min_length=1)
    file_size: int = Field(alias="fileSize", gt=0)
    file_type: Optional[str] = Field(default=None, alias="fileType")
    upload_id: str = Field(alias="uploadId", min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UploadFinalizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)


def _too_large():
    limit_mb = settings.upload_max_bytes // (1024 * 1024)
    return api_error(413, "file_too_large", f"File size exceeds maximum limit of {limit_mb}MB")


def _check_name(value: str, label: str) -> None:
    if "/" in value or ".." in value:
        raise api_error(400, "invalid_input", f"Invalid {label}")


async def _read_limited(file: UploadFile, limit: int) -> bytes:
    """Read an uploaded part, rejecting it once it passes ``limit`` bytes."""
    parts = []
    total = 0
    while True:
        block = await file.read(_READ_SIZE)
        if not block:
            break
        total += len(block)
        if total > limit:
            raise _too_large()
        parts.append(block)
    return b"".join(parts)


@router.post("")
async def upload_file(
    file: UploadFile = File(...),
    user: Any = Depends(verify_jwt),
    storage: UploadStorage = Depends(get_upload_storage),
):
    """Store a small file in one request."""
    data = await _read_limited(file, settings.upload_max_bytes)
    if not data:
        raise api_error(400, "invalid_input", "File is empty")

    path = f"{user_id_of(user)}/upload-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{content_extension(file.filename)}"
    try:
        await storage.put(path, data, file.content_type or "application/octet-stream")
    except JobsError as e:
        raise to_http_error(e)
    logger.info("Stored single-shot upload %s (%d bytes)", path, len(data))
    return {"url": storage.public_url(path), "path": path}


@router.post("/init")
async def init_upload(
    request: UploadInitRequest,
    user: Any = Depends(verify_jwt),
    storage: UploadStorage = Depends(get_upload_storage),
):
    if request.file_size > settings.upload_max_bytes:
        raise _too_large()
    _check_name(request.upload_id, "uploadId")

    user_id = user_id_of(user)
    session_id = f"session-{request.upload_id}-{int(time.time() * 1000)}"
    try:
        await storage.write_manifest(user_id, session_id, {
            "fileName": request.file_name,
            "fileSize": request.file_size,
            "fileType": request.file_type,
            "metadata": request.metadata,
        })
    except JobsError as e:
        raise to_http_error(e)
    logger.info("Opened upload session %s for %s (%d bytes)", session_id, request.file_name, request.file_size)
    return {
        "sessionId": session_id,
        "uploadUrl": "/api/v1/storage/upload/chunk",
        "uploadPath": f"{user_id}/{session_id}",
    }


@router.post("/chunk")
async def upload_chunk(
    chunk: UploadFile = File(...),
    chunk_index: int = Form(..., alias="chunkIndex", ge=0),
    session_id: str = Form(..., alias="sessionId"),
    user: Any = Depends(verify_jwt),
    storage: UploadStorage = Depends(get_upload_storage),
):
    _check_name(session_id, "sessionId")
    data = await _read_limited(chunk, settings.upload_max_bytes)
    if not data:
        raise api_error(400, "invalid_input", "Chunk is empty")

    path = chunk_object_path(user_id_of(user), session_id, chunk_index)
    try:
        await storage.put(path, data)
    except JobsError as e:
        raise to_http_error(e)
    return {"success": True, "chunkIndex": chunk_index}


@router.post("/finalize")
async def finalize_upload(
    request: UploadFinalizeRequest,
    user: Any = Depends(verify_jwt),
    storage: UploadStorage = Depends(get_upload_storage),
):
    _check_name(request.session_id, "sessionId")
    try:
        result = await storage.assemble(user_id_of(user), request.session_id, settings.upload_max_bytes)
    except JobsError as e:
        if e.status_code == 413:
            raise _too_large()
        raise to_http_error(e)
    return result
