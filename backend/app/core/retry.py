"""Retry policy shared by the analysis backends.

One policy object describes how many retries a backend gets, the backoff curve,
and which HTTP statuses are worth retrying. Backends own the loop; the policy
only answers "retry?" and "how long to wait?".
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from backend.app.constants import (
    OPENAI_BACKOFF_BASE_SECONDS,
    OPENAI_BACKOFF_MAX_SECONDS,
    OPENAI_MAX_RETRIES,
)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: delay(n) = min(base * 2**(n-1), max_delay) before retry n."""

    max_retries: int = 0
    base_delay: float = 1.0
    max_delay: float = 8.0
    retryable_statuses: frozenset[int] = field(default_factory=frozenset)
    retry_transport_errors: bool = False
    sleep: SleepFn = asyncio.sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        """Seconds to wait before retry `retry_number` (1-based)."""
        if retry_number < 1:
            return 0.0
        return min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)

    def can_retry(self, attempt: int) -> bool:
        """True when `attempt` (0-based) still has a retry after it."""
        return attempt < self.max_retries

    def should_retry_status(self, status_code: int, attempt: int) -> bool:
        return status_code in self.retryable_statuses and self.can_retry(attempt)

    async def backoff(self, retry_number: int) -> None:
        delay = self.delay_for(retry_number)
        if delay > 0:
            await self.sleep(delay)


NO_RETRY = RetryPolicy()

# Hosted chat-completion APIs: retry rate limiting / unavailability, nothing else.
HTTP_BACKEND_RETRY = RetryPolicy(
    max_retries=OPENAI_MAX_RETRIES,
    base_delay=OPENAI_BACKOFF_BASE_SECONDS,
    max_delay=OPENAI_BACKOFF_MAX_SECONDS,
    retryable_statuses=frozenset({429, 503}),
    retry_transport_errors=True,
)
