"""Shared httpx plumbing for provider clients.

Maps transport failures and HTTP status codes onto the service's error
taxonomy so the job processor and the retry utility can decide what to do
from the ``retryable`` flag alone.
"""

import logging
from typing import Any, Dict, Tuple

import httpx

from app.core.errors import (
    InvalidInputError,
    QuotaExceededError,
    TransientExternalError,
    UnauthorizedError,
    is_retryable_status,
)

logger = logging.getLogger(__name__)


def _response_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("type") or error)
        if isinstance(error, str):
            return error
        if isinstance(error, list) and error:
            return str(error[0])
        return str(body.get("message") or body)
    return str(body)


def raise_for_provider(response: httpx.Response, provider: str) -> None:
    """Raise the taxonomy error matching a non-2xx provider response."""
    if response.is_success:
        return

    status = response.status_code
    message = f"{provider} returned {status}: {_response_message(response)}"
    context: Dict[str, Any] = {"provider": provider, "status_code": status}

    if status == 429:
        if "quota" in response.text.lower():
            raise QuotaExceededError(message, status_code=status, context=context)
        raise TransientExternalError(message, status_code=status, context=context)
    if status in (401, 403):
        raise UnauthorizedError(message, status_code=status, context=context)
    if is_retryable_status(status):
        raise TransientExternalError(message, status_code=status, context=context)
    raise InvalidInputError(message, status_code=status, context=context)


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    provider: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request and translate transport and status failures."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientExternalError(
            f"{provider} request timed out: {e}", context={"provider": provider}
        ) from e
    except httpx.TransportError as e:
        raise TransientExternalError(
            f"{provider} network error: {e}", context={"provider": provider}
        ) from e
    raise_for_provider(response, provider)
    return response


async def download(client: httpx.AsyncClient, url: str) -> Tuple[bytes, str]:
    """Fetch a remote file. Returns (content, content_type)."""
    response = await send(client, "GET", url, "download", follow_redirects=True)
    content_type = response.headers.get("content-type", "application/octet-stream")
    return response.content, content_type.split(";")[0].strip()
