from __future__ import annotations

import httpx
import pytest

from auditsync.domain.events import TenantConfig
from auditsync.persistence.filters import ActivityFilters
from auditsync.persistence.store import ActivityStore
from auditsync.services.extractor import ActivityExtractor
from auditsync.services.orchestrator import ExtractionOrchestrator
from auditsync.tests.utils.factories import FIXED_NOW, make_tenant, raw_event


async def _no_sleep(seconds: float) -> None:
    return None


def _handler(request: httpx.Request) -> httpx.Response:
    # Token endpoint fails for one tenant; the activity endpoint serves two events per day.
    if request.url.path.endswith("/token"):
        if "dir-broken" in request.url.path:
            return httpx.Response(401, json={"error": "invalid_client"})
        return httpx.Response(200, json={"access_token": "tok"})
    day = request.url.params["startDateTime"].strip("'")[:10]
    return httpx.Response(
        200,
        json={
            "activityEventEntities": [
                raw_event(f"{day}-1", day=day, operation="DeleteReport", ReportName="Quarterly"),
                raw_event(f"{day}-2", day=day, operation="ViewLakehouseTableThing"),
            ]
        },
    )


def _orchestrator(store: ActivityStore, settings, tenants: list[TenantConfig]) -> ExtractionOrchestrator:  # noqa: ANN001
    client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    extractor = ActivityExtractor(client, settings=settings, sleep=_no_sleep)
    return ExtractionOrchestrator(store, extractor, tenants, settings=settings, time_provider=lambda: FIXED_NOW)


@pytest.mark.asyncio
async def test_end_to_end_run_is_idempotent(store: ActivityStore, settings) -> None:  # noqa: ANN001
    settings = settings.model_copy(
        update={
            "token_url_template": "https://login.example.test/{directory_id}/token",
            "activity_events_url": "https://api.example.test/activityevents",
        }
    )
    tenants = [make_tenant("broken"), make_tenant("contoso")]
    orchestrator = _orchestrator(store, settings, tenants)

    first = await orchestrator.trigger_manual(3)
    second = await orchestrator.trigger_manual(3)

    assert first.inserted == 6
    assert second.events_extracted == 6
    assert second.inserted == 0

    outcomes = {outcome.tenant_id: outcome for outcome in first.outcomes}
    assert outcomes["broken"].status == "error"
    assert "401" in (outcomes["broken"].error or "")
    assert outcomes["contoso"].status == "success"

    stored = await store.query(ActivityFilters(tenant="contoso"))
    assert len(stored) == 6
    categories = {(event.operation, event.category, event.severity) for event in stored}
    assert categories == {
        ("DeleteReport", "reports", "critical"),
        ("ViewLakehouseTableThing", "lakehouse", "info"),
    }

    entries = await store.list_extractions()
    assert len(entries) == 4
    assert {(entry.tenant_id, entry.status) for entry in entries} == {("broken", "error"), ("contoso", "success")}


@pytest.mark.asyncio
async def test_bootstrap_only_runs_on_empty_log(store: ActivityStore, settings) -> None:  # noqa: ANN001
    settings = settings.model_copy(
        update={
            "token_url_template": "https://login.example.test/{directory_id}/token",
            "activity_events_url": "https://api.example.test/activityevents",
            "initial_extract_days": 7,
        }
    )
    orchestrator = _orchestrator(store, settings, [make_tenant("contoso")])

    result = await orchestrator.bootstrap()
    assert result is not None
    assert result.inserted == 14
    assert await orchestrator.bootstrap() is None
