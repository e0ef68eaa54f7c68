from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from auditsync.core.errors import RateLimitedError
from auditsync.services.resilience import (
    RateLimitPolicy,
    RetryPolicy,
    parse_retry_after,
    retry_async,
    retry_rate_limited,
)


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _response(status: int, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(status, headers=headers or {}, request=httpx.Request("GET", "https://example.test"))


@pytest.mark.asyncio
async def test_retry_async_retries_transient_errors() -> None:
    sleep = _SleepRecorder()
    attempts = {"count": 0}

    async def _flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise httpx.ConnectError("boom")
        return "ok"

    policy = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=100)
    assert await retry_async(_flaky, policy=policy, sleep=sleep) == "ok"
    assert attempts["count"] == 3
    assert len(sleep.calls) == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_non_transient_errors() -> None:
    sleep = _SleepRecorder()
    attempts = {"count": 0}

    async def _broken() -> None:
        attempts["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(_broken, policy=RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=0), sleep=sleep)
    assert attempts["count"] == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_retry_async_gives_up_after_max_attempts() -> None:
    async def _down() -> None:
        raise httpx.ReadTimeout("slow")

    with pytest.raises(httpx.ReadTimeout):
        await retry_async(_down, policy=RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=0), sleep=_SleepRecorder())


@pytest.mark.asyncio
async def test_rate_limited_request_retried_once_with_retry_after() -> None:
    sleep = _SleepRecorder()
    responses = [_response(429, {"Retry-After": "7"}), _response(200)]

    async def _call() -> httpx.Response:
        return responses.pop(0)

    policy = RateLimitPolicy(default_retry_after_s=60, max_retries=5, max_total_wait_s=900)
    response = await retry_rate_limited(_call, policy=policy, sleep=sleep)
    assert response.status_code == 200
    assert sleep.calls == [7.0]


@pytest.mark.asyncio
async def test_rate_limit_uses_default_wait_without_header() -> None:
    sleep = _SleepRecorder()
    responses = [_response(429), _response(204)]

    async def _call() -> httpx.Response:
        return responses.pop(0)

    policy = RateLimitPolicy(default_retry_after_s=60, max_retries=5, max_total_wait_s=900)
    await retry_rate_limited(_call, policy=policy, sleep=sleep)
    assert sleep.calls == [60]


@pytest.mark.asyncio
async def test_rate_limit_is_bounded_by_retry_count() -> None:
    sleep = _SleepRecorder()

    async def _always_429() -> httpx.Response:
        return _response(429, {"Retry-After": "1"})

    policy = RateLimitPolicy(default_retry_after_s=60, max_retries=3, max_total_wait_s=900)
    with pytest.raises(RateLimitedError) as excinfo:
        await retry_rate_limited(_always_429, policy=policy, sleep=sleep)
    assert excinfo.value.attempts == 4
    assert len(sleep.calls) == 3


@pytest.mark.asyncio
async def test_rate_limit_is_bounded_by_total_wait() -> None:
    sleep = _SleepRecorder()

    async def _always_429() -> httpx.Response:
        return _response(429, {"Retry-After": "400"})

    policy = RateLimitPolicy(default_retry_after_s=60, max_retries=10, max_total_wait_s=900)
    with pytest.raises(RateLimitedError) as excinfo:
        await retry_rate_limited(_always_429, policy=policy, sleep=sleep)
    assert sleep.calls == [400.0, 400.0]
    assert excinfo.value.waited_s == 800.0


def test_parse_retry_after_variants() -> None:
    now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert parse_retry_after("30", 60) == 30.0
    assert parse_retry_after(None, 60) == 60
    assert parse_retry_after("soon", 60) == 60
    assert parse_retry_after("Wed, 01 Jan 2025 12:00:45 GMT", 60, now=now) == 45.0
    assert parse_retry_after("-5", 60) == 0.0
