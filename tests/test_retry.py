"""
test_retry.py — Tests for the retry executor and error classification.

Covers:
    • is_retryable_error (types, HTTP statuses, message patterns)
    • Attempt bound and jittered backoff schedule
    • Terminal errors short-circuit without sleeping
    • max_delay cap

Sleeps are recorded by an injected fake, so no test waits in real time.

Run with:
    pytest tests/test_retry.py -v
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from backend.app.notifications.errors import (
    IneligibleRecipientError,
    RetryError,
    TransportError,
)
from backend.app.notifications.retry import (
    RetryExecutor,
    RetryPolicy,
    error_status_code,
    is_retryable_error,
)


class _Recorder:
    """Fake sleep that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _make_operation(errors, result="ok"):
    """Async operation that raises each error in turn, then returns ``result``."""
    calls = {"count": 0}
    queue = list(errors)

    async def operation():
        calls["count"] += 1
        if queue:
            raise queue.pop(0)
        return result

    return operation, calls


# ═══════════════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════════════

class TestIsRetryableError:

    @pytest.mark.parametrize("exc", [
        asyncio.TimeoutError(),
        ConnectionError("reset"),
        httpx.ConnectTimeout("connect timed out"),
        httpx.ConnectError("connection refused"),
    ])
    def test_transient_types(self, exc):
        assert is_retryable_error(exc)

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_transient_statuses(self, status):
        assert is_retryable_error(TransportError("upstream said no", status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410, 422])
    def test_terminal_statuses(self, status):
        assert not is_retryable_error(TransportError("upstream said no", status))

    @pytest.mark.parametrize("message", [
        "Network error while sending",
        "request timed out",
        "ECONNRESET",
        "connection refused by host",
        "Rate limit exceeded",
        "429 Too Many Requests",
        "Service Unavailable",
        "getaddrinfo ENOTFOUND api.resend.com",
    ])
    def test_transient_messages(self, message):
        assert is_retryable_error(RuntimeError(message))

    def test_plain_error_is_terminal(self):
        assert not is_retryable_error(ValueError("invalid recipient"))

    def test_ineligible_is_terminal(self):
        assert not is_retryable_error(IneligibleRecipientError("network contact missing"))

    def test_httpx_status_error(self):
        request = httpx.Request("POST", "https://api.example.org")
        exc = httpx.HTTPStatusError(
            "server error", request=request, response=httpx.Response(503, request=request),
        )
        assert error_status_code(exc) == 503
        assert is_retryable_error(exc)


# ═══════════════════════════════════════════════════════════════════════════
# Executor
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryExecutor:

    def test_success_first_try(self):
        sleep = _Recorder()
        operation, calls = _make_operation([])
        result = asyncio.run(RetryExecutor(sleep=sleep).execute(operation))
        assert result == "ok"
        assert calls["count"] == 1
        assert sleep.delays == []

    def test_attempt_bound_and_backoff(self):
        sleep = _Recorder()
        errors = [TransportError("service unavailable", 503)] * 5
        operation, calls = _make_operation(errors)

        with pytest.raises(RetryError) as info:
            asyncio.run(RetryExecutor(RetryPolicy(), sleep=sleep).execute(operation))

        assert calls["count"] == 3
        assert info.value.attempts == 3
        assert isinstance(info.value.last_error, TransportError)
        assert info.value.__cause__ is info.value.last_error
        assert len(sleep.delays) == 2
        assert 1.0 <= sleep.delays[0] <= 1.1
        assert 2.0 <= sleep.delays[1] <= 2.2
        assert 3.0 <= sum(sleep.delays) <= 3.3

    def test_recovers_after_transient_failures(self):
        sleep = _Recorder()
        operation, calls = _make_operation([
            TransportError("connection reset", 503),
            TransportError("connection reset", 503),
        ])
        result = asyncio.run(RetryExecutor(sleep=sleep).execute(operation))
        assert result == "ok"
        assert calls["count"] == 3
        assert len(sleep.delays) == 2

    def test_terminal_error_short_circuits(self):
        sleep = _Recorder()
        operation, calls = _make_operation([TransportError("invalid number", 400)])

        with pytest.raises(RetryError) as info:
            asyncio.run(RetryExecutor(sleep=sleep).execute(operation))

        assert calls["count"] == 1
        assert info.value.attempts == 1
        assert sleep.delays == []

    def test_ineligible_not_retried(self):
        sleep = _Recorder()
        operation, calls = _make_operation([IneligibleRecipientError("no phone")])
        with pytest.raises(RetryError):
            asyncio.run(RetryExecutor(sleep=sleep).execute(operation))
        assert calls["count"] == 1

    def test_max_delay_caps_jittered_delay(self):
        sleep = _Recorder()
        policy = RetryPolicy(max_attempts=3, base_delay=8.0, max_delay=10.0)
        executor = RetryExecutor(policy, sleep=sleep, jitter=lambda low, high: high)
        operation, _ = _make_operation([asyncio.TimeoutError()] * 3)

        with pytest.raises(RetryError):
            asyncio.run(executor.execute(operation))

        assert sleep.delays == pytest.approx([8.8, 10.0])

    def test_deterministic_without_jitter(self):
        sleep = _Recorder()
        executor = RetryExecutor(
            RetryPolicy(max_attempts=4), sleep=sleep, jitter=lambda low, high: 0.0,
        )
        operation, _ = _make_operation([ConnectionError("down")] * 4)
        with pytest.raises(RetryError):
            asyncio.run(executor.execute(operation))
        assert sleep.delays == [1.0, 2.0, 4.0]

    def test_single_attempt_policy(self):
        sleep = _Recorder()
        operation, calls = _make_operation([asyncio.TimeoutError()])
        with pytest.raises(RetryError) as info:
            asyncio.run(RetryExecutor(RetryPolicy(max_attempts=1), sleep=sleep).execute(operation))
        assert calls["count"] == 1
        assert info.value.attempts == 1
        assert sleep.delays == []


class TestRetryPolicy:

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 10.0
        assert policy.backoff_multiplier == 2.0
        assert policy.jitter_ratio == 0.1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_base_delays_sequence(self):
        delays = RetryPolicy(base_delay=1.5, backoff_multiplier=3.0).base_delays()
        assert [next(delays) for _ in range(3)] == [1.5, 4.5, 13.5]

    def test_upper_bound(self):
        assert RetryPolicy().upper_bound(2) == pytest.approx(3.3)
