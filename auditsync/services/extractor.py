from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Iterator, Sequence

import httpx

from auditsync.core.config import Settings, get_settings
from auditsync.core.errors import AuditSyncError, AuthError, MalformedEventError, UpstreamError
from auditsync.domain.events import ActivityEvent, TenantConfig
from auditsync.services.auth.client_credentials import get_access_token
from auditsync.services.categorizer import Categorizer
from auditsync.services.normalizer import normalize
from auditsync.services.resilience import (
    RateLimitPolicy,
    RetryPolicy,
    Sleep,
    default_rate_limit_policy,
    default_retry_policy,
    rate_limited_budget_s,
    retry_async,
    retry_budget_s,
    retry_rate_limited,
)


logger = logging.getLogger(__name__)

TokenProvider = Callable[[TenantConfig], Awaitable[str]]
TokenRefresh = Callable[[], Awaitable[str]]

_BODY_LOG_LIMIT = 500


def coerce_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def iter_days(from_date: date, to_date: date) -> Iterator[date]:
    # Inclusive, ascending; empty when the range is inverted.
    current = from_date
    while current <= to_date:
        yield current
        current += timedelta(days=1)


def day_window(day: date) -> dict[str, str]:
    # The activity endpoint takes one UTC day per request, as quoted ISO-8601 literals.
    iso = day.isoformat()
    return {
        "startDateTime": f"'{iso}T00:00:00.000Z'",
        "endDateTime": f"'{iso}T23:59:59.999Z'",
    }


def run_time_budget_s(settings: Settings, *, tenants: int, days: int) -> float:
    # Longest a run can take when every retry, 429 wait and page cap is spent in full.
    transport_s = retry_budget_s(default_retry_policy(settings))
    request_s = rate_limited_budget_s(default_rate_limit_policy(settings), transport_s)
    delay_s = settings.extract_inter_day_delay_ms / 1000.0
    # A 401 costs one token call and one repeated request per page.
    day_s = settings.extract_max_pages_per_day * (2 * request_s + transport_s)
    tenant_s = transport_s + days * (day_s + delay_s)
    return max(1, tenants) * (tenant_s + delay_s)


@dataclass(frozen=True)
class DayFailure:
    day: date
    error: str


@dataclass
class TenantExtraction:
    tenant: TenantConfig
    from_date: date
    to_date: date
    events: list[ActivityEvent] = field(default_factory=list)
    failed_days: list[DayFailure] = field(default_factory=list)
    skipped_events: int = 0

    @property
    def days_requested(self) -> int:
        return (self.to_date - self.from_date).days + 1 if self.to_date >= self.from_date else 0

    @property
    def ok(self) -> bool:
        return not self.failed_days

    def error_summary(self) -> str | None:
        if not self.failed_days:
            return None
        parts = [f"{failure.day.isoformat()}: {failure.error}" for failure in self.failed_days]
        return f"{len(self.failed_days)} of {self.days_requested} day(s) failed; " + "; ".join(parts)


class ActivityExtractor:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        settings: Settings | None = None,
        categorizer: Categorizer | None = None,
        token_provider: TokenProvider | None = None,
        retry_policy: RetryPolicy | None = None,
        rate_limit_policy: RateLimitPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None
        self._categorizer = categorizer
        self._token_provider = token_provider
        self._retry_policy = retry_policy or default_retry_policy(self._settings)
        self._rate_limit_policy = rate_limit_policy or default_rate_limit_policy(self._settings)
        self._sleep = sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse one client per extractor for connection pooling across days and tenants.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_token(self, tenant: TenantConfig) -> str:
        if self._token_provider is not None:
            return await self._token_provider(tenant)
        return await get_access_token(
            tenant,
            client=self._get_client(),
            settings=self._settings,
            policy=self._retry_policy,
        )

    async def pause(self) -> None:
        # Spacing between consecutive days and between tenants; the quota is shared.
        delay_s = self._settings.extract_inter_day_delay_ms / 1000.0
        if delay_s > 0:
            await self._sleep(delay_s)

    async def _send(self, url: str, params: dict[str, str] | None, token: str) -> httpx.Response:
        # One logical request: transport retries inside, 429 waits outside.
        client = self._get_client()
        headers = {"Authorization": f"Bearer {token}"}

        async def _call() -> httpx.Response:
            return await client.get(url, params=params, headers=headers)

        async def _attempt() -> httpx.Response:
            return await retry_async(_call, policy=self._retry_policy, sleep=self._sleep)

        try:
            return await retry_rate_limited(_attempt, policy=self._rate_limit_policy, sleep=self._sleep)
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise UpstreamError(f"activity request failed: {exc!r}") from exc

    async def fetch_day(
        self, token: str, day: date, *, refresh: TokenRefresh | None = None
    ) -> list[dict[str, Any]]:
        # Follow continuation links until the upstream stops returning one.
        url = self._settings.activity_events_url
        params: dict[str, str] | None = day_window(day)
        collected: list[dict[str, Any]] = []
        pages = 0
        while True:
            pages += 1
            if pages > self._settings.extract_max_pages_per_day:
                raise UpstreamError(f"pagination exceeded {self._settings.extract_max_pages_per_day} pages")
            response = await self._send(url, params, token)
            if response.status_code == 401 and refresh is not None:
                # Tokens live about an hour; long runs re-authenticate once and repeat the request.
                try:
                    token = await refresh()
                except AuthError as exc:
                    raise UpstreamError(f"token refresh failed: {exc}", status_code=401) from exc
                response = await self._send(url, params, token)
            if not response.is_success:
                body = response.text
                raise UpstreamError(
                    f"API error: {response.status_code} - {body[:_BODY_LOG_LIMIT]}",
                    status_code=response.status_code,
                    body=body,
                )
            try:
                data = response.json()
            except ValueError as exc:
                raise UpstreamError("activity response is not JSON") from exc
            if not isinstance(data, dict):
                raise UpstreamError("activity response is not a JSON object")
            entities = data.get("activityEventEntities") or []
            if not isinstance(entities, list):
                raise UpstreamError("activityEventEntities is not a list")
            collected.extend(entities)
            continuation = data.get("continuationUri")
            if not continuation or data.get("lastResultSet") is True:
                return collected
            url, params = continuation, None

    def _normalize_day(
        self, tenant: TenantConfig, day: date, raw_events: Sequence[Any], result: TenantExtraction
    ) -> None:
        for raw in raw_events:
            try:
                result.events.append(normalize(raw, tenant, day=day, categorizer=self._categorizer))
            except MalformedEventError as exc:
                result.skipped_events += 1
                logger.warning("malformed_event_skipped tenant=%s day=%s error=%s", tenant.id, day, exc)

    async def run_tenant(
        self, tenant: TenantConfig, from_date: date | str, to_date: date | str
    ) -> TenantExtraction:
        # Raises AuthError when no token can be obtained; day failures are recorded, not raised.
        start = coerce_date(from_date)
        end = coerce_date(to_date)
        result = TenantExtraction(tenant=tenant, from_date=start, to_date=end)
        logger.info("tenant_auth_start tenant=%s directory_id=%s", tenant.id, tenant.directory_id)
        token = await self.get_token(tenant)

        async def refresh() -> str:
            nonlocal token
            logger.info("token_refresh tenant=%s reason=unauthorized", tenant.id)
            token = await self.get_token(tenant)
            return token

        days = list(iter_days(start, end))
        for index, day in enumerate(days):
            if index:
                await self.pause()
            try:
                raw_events = await self.fetch_day(token, day, refresh=refresh)
            except UpstreamError as exc:
                logger.error("extract_day_failed tenant=%s day=%s error=%s", tenant.id, day, exc)
                result.failed_days.append(DayFailure(day=day, error=str(exc)))
            else:
                self._normalize_day(tenant, day, raw_events, result)
                logger.info("extract_day_done tenant=%s day=%s events=%s", tenant.id, day, len(raw_events))

        logger.info(
            "extract_tenant_done tenant=%s events=%s failed_days=%s skipped=%s",
            tenant.id,
            len(result.events),
            len(result.failed_days),
            result.skipped_events,
        )
        return result

    async def extract_tenant(
        self, tenant: TenantConfig, from_date: date | str, to_date: date | str
    ) -> list[ActivityEvent]:
        return (await self.run_tenant(tenant, from_date, to_date)).events

    async def extract_all(
        self, tenants: Sequence[TenantConfig], from_date: date | str, to_date: date | str
    ) -> list[ActivityEvent]:
        # Tenants run one after another so they share the hourly request budget.
        events: list[ActivityEvent] = []
        for index, tenant in enumerate(tenants):
            if index:
                await self.pause()
            try:
                events.extend(await self.extract_tenant(tenant, from_date, to_date))
            except AuditSyncError as exc:
                logger.error("extract_tenant_failed tenant=%s error=%s", tenant.id, exc)
        logger.info("extract_all_done tenants=%s events=%s", len(tenants), len(events))
        return events
