"""Bounded retry policy for outbound HTTP calls.

Retries on transient HTTP errors (429, 500, 502, 503, 504) and connection
errors. Respects Retry-After headers. Logs each retry attempt.

One policy object is shared by every outbound call site: event forwarding
to the internal reconciliation API and webhook subscription setup.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def is_retryable(exc: BaseException) -> bool:
    """Default retryable-error predicate for httpx calls."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.TransportError, ConnectionError, OSError))


@dataclass(frozen=True)
class RetryPolicy:
    """Retry a callable a bounded number of times with increasing delay.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Delay after the first failed attempt, in seconds.
            Grows linearly with the attempt number.
        max_delay: Cap on any single delay, including Retry-After values.
        attempt_timeout: Per-attempt time bound, passed to the callable's
            HTTP client by the call site.
        retry_on: Predicate deciding whether an exception is worth retrying.
        sleep: Injected for tests.
    """

    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 5.0
    attempt_timeout: float = 5.0
    retry_on: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int, exc: BaseException | None = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        if isinstance(exc, httpx.HTTPStatusError):
            retry_after = exc.response.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(float(retry_after), self.max_delay)
                except ValueError:
                    pass
        return min(self.base_delay * attempt, self.max_delay)

    def call(self, fn: Callable[[], T], *, description: str = "") -> T:
        """Run ``fn`` until it succeeds or the policy gives up.

        Non-retryable errors and the error of the final attempt propagate
        unchanged.
        """
        name = description or getattr(fn, "__name__", "call")
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= self.max_attempts or not self.retry_on(e):
                    raise
                delay = self.delay_for(attempt, e)
                logger.warning(
                    "Retry %d/%d for %s (%s), waiting %.2fs",
                    attempt,
                    self.max_attempts - 1,
                    name,
                    type(e).__name__,
                    delay,
                )
                self.sleep(delay)
                attempt += 1
