"""Retry with exponential backoff for transient external calls.

One policy object drives every call site that talks to something flaky
(chunk and file uploads, provider triggers, status polling over HTTP):

    >>> policy = RetryPolicy(max_attempts=4, initial_delay=0.5, max_delay=8.0)
    >>> result = await retry_async(lambda: client.post(url), policy)

Only exceptions accepted by ``policy.retry_if`` are retried; anything else
propagates on the first attempt. When attempts run out the last exception is
re-raised unchanged.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.core.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    retry_if: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.initial_delay,
                exp_base=self.backoff_factor,
                min=0,
                max=self.max_delay,
            ),
            retry=retry_if_exception(self.retry_if),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )


DEFAULT_POLICY = RetryPolicy()


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
) -> T:
    """Await ``fn()`` until it succeeds, a non-retryable error occurs, or attempts run out."""
    async for attempt in (policy or DEFAULT_POLICY).retrying():
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # reraise=True always surfaces the last error

