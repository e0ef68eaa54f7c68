from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from auditsync.core.config import Settings, get_settings
from auditsync.core.errors import RateLimitedError


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TimeoutException, httpx.NetworkError)

Sleep = Callable[[float], Awaitable[None]]


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize transport retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def retry_budget_s(policy: RetryPolicy) -> float:
    # Longest retry_async can take: every attempt times out and every backoff draws maximum jitter.
    attempts = max(policy.max_attempts, 1)
    backoff_s = sum((policy.backoff_ms / 1000.0) * (2**step) * 1.5 for step in range(attempts - 1))
    return attempts * policy.timeout_ms / 1000.0 + backoff_s


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.warning("transient_failure_retry attempt=%s sleep_s=%.2f error=%s", attempt, sleep_s, exc)
            await sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class RateLimitPolicy:
    # Bound 429 handling by retry count and by total time spent waiting.
    default_retry_after_s: float
    max_retries: int
    max_total_wait_s: float


def default_rate_limit_policy(settings: Settings | None = None) -> RateLimitPolicy:
    settings = settings or get_settings()
    return RateLimitPolicy(
        default_retry_after_s=settings.rate_limit_default_retry_after_s,
        max_retries=settings.rate_limit_max_retries,
        max_total_wait_s=settings.rate_limit_max_wait_s,
    )


def rate_limited_budget_s(policy: RateLimitPolicy, attempt_s: float) -> float:
    # Every allowed 429 retry re-issues the request, plus the capped total wait.
    return (policy.max_retries + 1) * attempt_s + policy.max_total_wait_s


def parse_retry_after(value: str | None, default_s: float, *, now: datetime | None = None) -> float:
    # Retry-After is delta-seconds or an HTTP date; fall back to the default when unusable.
    if not value:
        return default_s
    text = value.strip()
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return default_s
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


async def retry_rate_limited(
    func: Callable[[], Awaitable[httpx.Response]],
    *,
    policy: RateLimitPolicy | None = None,
    sleep: Sleep = asyncio.sleep,
) -> httpx.Response:
    # Re-issue the same request while the upstream answers 429; any other response is returned.
    policy = policy or default_rate_limit_policy()
    retries = 0
    waited = 0.0
    while True:
        response = await func()
        if response.status_code != 429:
            return response
        wait_s = parse_retry_after(response.headers.get("Retry-After"), policy.default_retry_after_s)
        if retries >= policy.max_retries or waited + wait_s > policy.max_total_wait_s:
            raise RateLimitedError(
                f"rate limited after {retries + 1} attempts ({waited:.0f}s waited)",
                attempts=retries + 1,
                waited_s=waited,
            )
        logger.info("rate_limited retry_after_s=%.0f attempt=%s", wait_s, retries + 1)
        await sleep(wait_s)
        waited += wait_s
        retries += 1
