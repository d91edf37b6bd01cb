"""Error taxonomy shared by the job service, processor, providers and uploads.

Every error carries a ``retryable`` flag. The job processor and the retry
utility only consult that flag (through :func:`is_retryable`), never the
concrete class, so provider clients decide retryability where the failure is
observed.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException


class JobsError(Exception):
    """Base class for all errors raised by this service."""

    code: str = "internal_error"
    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        retryable: Optional[bool] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        if code is not None:
            self.code = code
        self.status_code = status_code
        self.context = context or {}


class InvalidInputError(JobsError):
    """Bad input shape or size. Never retried."""

    code = "invalid_input"


class UnauthorizedError(JobsError):
    """Access denied by the trigger, the store or a provider."""

    code = "unauthorized"


class JobNotFoundError(JobsError):
    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", context={"job_id": job_id})
        self.job_id = job_id


class TransientExternalError(JobsError):
    """Network, timeout or 5xx failure from a provider or the store."""

    code = "transient_external"
    retryable = True


class StoreError(TransientExternalError):
    code = "store_error"


class QuotaExceededError(JobsError):
    """A provider-side usage limit was reached."""

    code = "quota_exceeded"


class OperationCancelledError(JobsError):
    """User-initiated cancellation. Terminal, not a failure."""

    code = "cancelled"


class InvalidTransitionError(JobsError):
    """The requested status change is not allowed from the current status."""

    code = "invalid_transition"


class RetryBudgetExhaustedError(JobsError):
    code = "retry_budget_exhausted"


class UploadError(JobsError):
    code = "upload_failed"


class UploadValidationError(UploadError, InvalidInputError):
    code = "upload_invalid"
    retryable = False


class UploadCancelledError(UploadError, OperationCancelledError):
    code = "upload_cancelled"
    retryable = False


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def is_retryable(exc: BaseException) -> bool:
    """Return True when ``exc`` is worth another attempt."""
    if isinstance(exc, JobsError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError)):
        return True
    return False


def error_message(exc: BaseException, fallback: str = "Unknown error") -> str:
    message = getattr(exc, "message", None) or str(exc)
    message = message.strip() if message else ""
    return message or fallback


def api_error(
    status_code: int,
    code: str,
    message: str,
    detail: Optional[dict] = None,
    hint: Optional[str] = None,
) -> HTTPException:
    payload = {
        "code": code,
        "message": message,
        "detail": detail or {},
        "hint": hint,
    }
    return HTTPException(status_code=status_code, detail=payload)


_HTTP_STATUS_BY_ERROR = (
    (JobNotFoundError, 404),
    (UnauthorizedError, 401),
    (InvalidTransitionError, 409),
    (RetryBudgetExhaustedError, 409),
    (InvalidInputError, 400),
    (QuotaExceededError, 429),
    (OperationCancelledError, 499),
    (TransientExternalError, 503),
)


def to_http_error(exc: JobsError) -> HTTPException:
    """Translate a service error into the structured HTTP error payload."""
    status_code = 500
    for error_type, mapped in _HTTP_STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped
            break
    return api_error(status_code, exc.code, error_message(exc), exc.context)
