from __future__ import annotations

from datetime import date
from typing import Any, Callable

import httpx
import pytest

from auditsync.core.errors import AuthError
from auditsync.domain.events import TenantConfig
from auditsync.services.extractor import ActivityExtractor, day_window, iter_days, run_time_budget_s
from auditsync.tests.utils.factories import make_settings, make_tenant, raw_event


ACTIVITY_URL = "https://api.example.test/admin/activityevents"


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


async def _static_token(tenant: TenantConfig) -> str:
    return f"token-{tenant.id}"


def _build(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    token_provider=_static_token,
    **settings_overrides: Any,
) -> tuple[ActivityExtractor, _SleepRecorder]:
    sleep = _SleepRecorder()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    extractor = ActivityExtractor(
        client,
        settings=make_settings(activity_events_url=ACTIVITY_URL, **settings_overrides),
        token_provider=token_provider,
        sleep=sleep,
    )
    return extractor, sleep


def _day_of(request: httpx.Request) -> str:
    # startDateTime is "'YYYY-MM-DDT00:00:00.000Z'".
    return request.url.params["startDateTime"].strip("'")[:10]


def test_iter_days_is_inclusive() -> None:
    assert list(iter_days(date(2025, 1, 1), date(2025, 1, 3))) == [
        date(2025, 1, 1),
        date(2025, 1, 2),
        date(2025, 1, 3),
    ]
    assert list(iter_days(date(2025, 1, 3), date(2025, 1, 1))) == []


def test_day_window_is_one_quoted_utc_day() -> None:
    assert day_window(date(2025, 1, 2)) == {
        "startDateTime": "'2025-01-02T00:00:00.000Z'",
        "endDateTime": "'2025-01-02T23:59:59.999Z'",
    }


@pytest.mark.asyncio
async def test_three_day_range_issues_three_single_day_requests() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        day = _day_of(request)
        requested.append(day)
        assert request.headers["Authorization"] == "Bearer token-contoso"
        return httpx.Response(200, json={"activityEventEntities": [raw_event(f"evt-{day}", day=day)]})

    extractor, _ = _build(handler)
    events = await extractor.extract_tenant(make_tenant(), "2025-01-01", "2025-01-03")
    assert requested == ["2025-01-01", "2025-01-02", "2025-01-03"]
    assert [event.activity_id for event in events] == ["evt-2025-01-01", "evt-2025-01-02", "evt-2025-01-03"]


@pytest.mark.asyncio
async def test_pagination_follows_continuation_until_absent() -> None:
    pages = {
        "page-2": {"activityEventEntities": [raw_event("b")], "continuationUri": f"{ACTIVITY_URL}?token=page-3"},
        "page-3": {"activityEventEntities": [raw_event("c")]},
    }
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        token = request.url.params.get("token")
        calls.append(token or "first")
        if token is None:
            return httpx.Response(
                200,
                json={"activityEventEntities": [raw_event("a")], "continuationUri": f"{ACTIVITY_URL}?token=page-2"},
            )
        return httpx.Response(200, json=pages[token])

    extractor, _ = _build(handler)
    events = await extractor.extract_tenant(make_tenant(), "2025-01-01", "2025-01-01")
    assert calls == ["first", "page-2", "page-3"]
    assert [event.activity_id for event in events] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_last_result_set_ends_pagination() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(
            200,
            json={
                "activityEventEntities": [raw_event("a")],
                "continuationUri": f"{ACTIVITY_URL}?token=next",
                "lastResultSet": True,
            },
        )

    extractor, _ = _build(handler)
    events = await extractor.extract_tenant(make_tenant(), "2025-01-01", "2025-01-01")
    assert calls["count"] == 1
    assert len(events) == 1


@pytest.mark.asyncio
async def test_rate_limited_day_is_retried_once_without_duplicates() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "3"}),
        httpx.Response(200, json={"activityEventEntities": [raw_event("a"), raw_event("b")]}),
    ]
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(_day_of(request))
        return responses.pop(0)

    extractor, sleep = _build(handler)
    events = await extractor.extract_tenant(make_tenant(), "2025-01-01", "2025-01-01")
    assert requested == ["2025-01-01", "2025-01-01"]
    assert sleep.calls == [3.0]
    assert [event.activity_id for event in events] == ["a", "b"]


@pytest.mark.asyncio
async def test_failed_day_does_not_abort_remaining_days() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        day = _day_of(request)
        if day == "2025-01-02":
            return httpx.Response(400, text="bad request")
        return httpx.Response(200, json={"activityEventEntities": [raw_event(f"evt-{day}", day=day)]})

    extractor, _ = _build(handler)
    result = await extractor.run_tenant(make_tenant(), "2025-01-01", "2025-01-03")
    assert [event.activity_id for event in result.events] == ["evt-2025-01-01", "evt-2025-01-03"]
    assert [failure.day for failure in result.failed_days] == [date(2025, 1, 2)]
    assert not result.ok
    assert "400" in (result.error_summary() or "")


@pytest.mark.asyncio
async def test_malformed_events_are_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"activityEventEntities": [{"Operation": "ViewReport"}, raw_event("ok")]})

    extractor, _ = _build(handler)
    result = await extractor.run_tenant(make_tenant(), "2025-01-01", "2025-01-01")
    assert [event.activity_id for event in result.events] == ["ok"]
    assert result.skipped_events == 1
    assert result.ok


@pytest.mark.asyncio
async def test_runaway_pagination_fails_the_day() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"activityEventEntities": [], "continuationUri": f"{ACTIVITY_URL}?token=again"}
        )

    extractor, _ = _build(handler, extract_max_pages_per_day=3)
    result = await extractor.run_tenant(make_tenant(), "2025-01-01", "2025-01-01")
    assert result.events == []
    assert len(result.failed_days) == 1


@pytest.mark.asyncio
async def test_inter_day_delay_between_days_only() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"activityEventEntities": []})

    extractor, sleep = _build(handler, extract_inter_day_delay_ms=500)
    await extractor.extract_tenant(make_tenant(), "2025-01-01", "2025-01-03")
    assert sleep.calls == [0.5, 0.5]


@pytest.mark.asyncio
async def test_extract_all_isolates_tenant_auth_failure() -> None:
    async def token_provider(tenant: TenantConfig) -> str:
        if tenant.id == "broken":
            raise AuthError("Token error for tenant Broken: 401 - invalid_client", status_code=401)
        return "token"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"activityEventEntities": [raw_event("a")]})

    extractor, _ = _build(handler, token_provider=token_provider)
    tenants = [make_tenant("broken"), make_tenant("healthy")]
    events = await extractor.extract_all(tenants, "2025-01-01", "2025-01-01")
    assert [event.tenant_id for event in events] == ["healthy"]


@pytest.mark.asyncio
async def test_extract_all_spaces_tenants_like_days() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"activityEventEntities": []})

    extractor, sleep = _build(handler, extract_inter_day_delay_ms=500)
    tenants = [make_tenant("contoso"), make_tenant("fabrikam"), make_tenant("northwind")]
    await extractor.extract_all(tenants, "2025-01-01", "2025-01-01")
    assert sleep.calls == [0.5, 0.5]


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_and_request_repeated() -> None:
    issued: list[str] = []

    async def token_provider(tenant: TenantConfig) -> str:
        issued.append(f"tok-{len(issued) + 1}")
        return issued[-1]

    def handler(request: httpx.Request) -> httpx.Response:
        day = _day_of(request)
        token = request.headers["Authorization"].removeprefix("Bearer ")
        # tok-1 expires after the first day.
        if token == "tok-1" and day != "2025-01-01":
            return httpx.Response(401, text="token expired")
        return httpx.Response(200, json={"activityEventEntities": [raw_event(f"evt-{day}", day=day)]})

    extractor, _ = _build(handler, token_provider=token_provider)
    result = await extractor.run_tenant(make_tenant(), "2025-01-01", "2025-01-03")
    assert [event.activity_id for event in result.events] == [
        "evt-2025-01-01",
        "evt-2025-01-02",
        "evt-2025-01-03",
    ]
    assert result.failed_days == []
    assert issued == ["tok-1", "tok-2"]


@pytest.mark.asyncio
async def test_unauthorized_after_refresh_fails_only_that_day() -> None:
    calls: list[str] = []
    issued: list[str] = []

    async def token_provider(tenant: TenantConfig) -> str:
        issued.append("tok")
        return "tok"

    def handler(request: httpx.Request) -> httpx.Response:
        day = _day_of(request)
        calls.append(day)
        if day == "2025-01-02":
            return httpx.Response(401, text="forbidden for tenant")
        return httpx.Response(200, json={"activityEventEntities": [raw_event(f"evt-{day}", day=day)]})

    extractor, _ = _build(handler, token_provider=token_provider)
    result = await extractor.run_tenant(make_tenant(), "2025-01-01", "2025-01-03")
    assert calls == ["2025-01-01", "2025-01-02", "2025-01-02", "2025-01-03"]
    assert [failure.day for failure in result.failed_days] == [date(2025, 1, 2)]
    assert "401" in result.failed_days[0].error
    assert len(issued) == 2


@pytest.mark.asyncio
async def test_failed_token_refresh_fails_the_day() -> None:
    issued: list[str] = []

    async def token_provider(tenant: TenantConfig) -> str:
        issued.append("tok")
        if len(issued) > 1:
            raise AuthError("Token error for tenant Contoso: 400 - invalid_client", status_code=400)
        return "tok"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="token expired")

    extractor, _ = _build(handler, token_provider=token_provider)
    result = await extractor.run_tenant(make_tenant(), "2025-01-01", "2025-01-01")
    assert result.events == []
    assert "token refresh failed" in result.failed_days[0].error


def test_run_time_budget_covers_every_cap() -> None:
    settings = make_settings(
        ext_call_timeout_ms=1000,
        ext_retry_max_attempts=2,
        ext_retry_backoff_ms=1000,
        rate_limit_max_retries=1,
        rate_limit_max_wait_s=10,
        extract_inter_day_delay_ms=0,
        extract_max_pages_per_day=1,
    )
    # Transport: 2 timeouts plus one backoff of at most 1.5s.
    # Request: 2 transport runs plus 10s of 429 waits.
    # Day: one page, repeated once after a 401 refresh.
    transport_s = 3.5
    request_s = 2 * transport_s + 10
    day_s = 2 * request_s + transport_s
    assert run_time_budget_s(settings, tenants=1, days=1) == pytest.approx(transport_s + day_s)
    assert run_time_budget_s(settings, tenants=2, days=3) == pytest.approx(2 * (transport_s + 3 * day_s))
