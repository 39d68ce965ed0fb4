"""
Retry Executor — exponential backoff with jitter for transport calls.

Every channel send goes through one ``RetryExecutor``. Transient failures
(timeouts, network errors, rate limits, 5xx) are retried; anything else is
terminal and surfaces immediately.

═══════════════════════════════════════════════════════════════════════════
BACKOFF SCHEDULE
═══════════════════════════════════════════════════════════════════════════

Delay after failed attempt n (1-based), before attempt n+1:

    min(base_delay × multiplier^(n-1) × (1 + U[0, jitter_ratio]), max_delay)

With the defaults (3 attempts, 1s base, ×2, 10% jitter, 10s cap):

    attempt 1 ✗ ── ~1.0–1.1s ──► attempt 2 ✗ ── ~2.0–2.2s ──► attempt 3 ✗ ──► RetryError

The un-jittered sequence comes from ``backoff.expo``; jitter and the cap
are applied on top so the cap is a hard ceiling.

Usage:
    executor = RetryExecutor(RetryPolicy.from_settings(settings))
    await executor.execute(lambda: sender.send(recipient, payload),
                           description="email → user-42")
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import backoff
import httpx

from backend.app.notifications.errors import IneligibleRecipientError, RetryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP statuses worth another attempt
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

_RETRYABLE_PATTERNS = re.compile(
    r"network|timeout|timed out|econnreset|connection reset|econnrefused"
    r"|connection refused|rate limit|too many requests|service unavailable"
    r"|getaddrinfo|enotfound|temporary failure in name resolution",
    re.IGNORECASE,
)

_RETRYABLE_TYPES: Tuple[type, ...] = (
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
)


# ═══════════════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════════════

def error_status_code(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an exception, if any."""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(exc: BaseException) -> bool:
    """True if another attempt could plausibly succeed."""
    if isinstance(exc, IneligibleRecipientError):
        return False
    if isinstance(exc, _RETRYABLE_TYPES):
        return True
    status = error_status_code(exc)
    if status is not None and status in RETRYABLE_STATUS_CODES:
        return True
    return bool(_RETRYABLE_PATTERNS.search(str(exc)))


# ═══════════════════════════════════════════════════════════════════════════
# Policy
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0       # seconds
    max_delay: float = 10.0       # seconds
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.NOTIFY_RETRY_MAX_ATTEMPTS,
            base_delay=settings.NOTIFY_RETRY_BASE_DELAY,
            max_delay=settings.NOTIFY_RETRY_MAX_DELAY,
            backoff_multiplier=settings.NOTIFY_RETRY_BACKOFF_MULTIPLIER,
        )

    def base_delays(self):
        """Un-jittered delays: base, base×m, base×m², ..."""
        gen = backoff.expo(base=self.backoff_multiplier, factor=self.base_delay)
        gen.send(None)
        return gen

    def upper_bound(self, failed_attempts: int) -> float:
        """Largest total sleep possible across ``failed_attempts`` retries."""
        total = 0.0
        for n in range(1, failed_attempts + 1):
            raw = self.base_delay * self.backoff_multiplier ** (n - 1)
            total += min(raw * (1 + self.jitter_ratio), self.max_delay)
        return total


# ═══════════════════════════════════════════════════════════════════════════
# Executor
# ═══════════════════════════════════════════════════════════════════════════

class RetryExecutor:
    """
    Run an async operation with bounded retries.

    Parameters
    ----------
    policy : RetryPolicy
        Attempt bound and delay schedule.
    sleep : callable
        Awaitable sleep; tests inject a recorder.
    jitter : callable
        ``jitter(low, high) -> float``; defaults to ``random.uniform``.

    Raises
    ------
    RetryError
        On a terminal error or when attempts run out. ``attempts`` is the
        number of invocations made; ``last_error`` the final exception,
        which is also chained as ``__cause__``.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._jitter = jitter

    def compute_delay(self, raw_delay: float) -> float:
        factor = 1 + self._jitter(0.0, self.policy.jitter_ratio)
        return min(raw_delay * factor, self.policy.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
    ) -> T:
        delays = self.policy.base_delays()
        attempt = 0

        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not is_retryable_error(exc):
                    logger.info(
                        "%s failed with non-retryable error on attempt %d: %s",
                        description, attempt, exc,
                        extra={"attempt": attempt},
                    )
                    raise RetryError(attempt, exc) from exc

                if attempt >= self.policy.max_attempts:
                    logger.error(
                        "%s failed after %d attempts: %s",
                        description, attempt, exc,
                        extra={"attempt": attempt},
                    )
                    raise RetryError(attempt, exc) from exc

                delay = self.compute_delay(next(delays))
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.2fs",
                    description, attempt, self.policy.max_attempts, exc, delay,
                    extra={"attempt": attempt},
                )
                await self._sleep(delay)
