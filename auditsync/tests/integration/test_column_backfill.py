from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auditsync.domain.models import Activity
from auditsync.persistence.store import ActivityStore
from auditsync.services.maintenance import backfill_columns
from auditsync.tests.utils.factories import make_event


GUID = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"


async def _row(store: ActivityStore, activity_id: str) -> Activity:
    async with AsyncSession(store.engine) as session:
        result = await session.execute(select(Activity).where(Activity.activity_id == activity_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_backfill_fills_missing_columns_from_payload(store: ActivityStore) -> None:
    await store.insert(
        [
            make_event("a", raw={"WorkspaceName": "Finance", "ClientIP": "10.1.1.1"}),
            make_event("b", item_name=GUID, raw={"ReportName": "Quarterly", "ObjectId": GUID}),
            make_event("c", workspace_name="Kept", raw={"WorkspaceName": "Ignored"}),
        ]
    )

    result = await backfill_columns(store, batch_size=2)

    assert result.scanned == 3
    assert result.updated == 2
    assert result.batches == 2
    row_a = await _row(store, "a")
    assert (row_a.workspace_name, row_a.client_ip) == ("Finance", "10.1.1.1")
    assert (await _row(store, "b")).item_name == "Quarterly"
    assert (await _row(store, "c")).workspace_name == "Kept"


@pytest.mark.asyncio
async def test_backfill_is_idempotent(store: ActivityStore) -> None:
    await store.insert([make_event("a", raw={"WorkspaceName": "Finance"})])

    first = await backfill_columns(store, batch_size=10)
    second = await backfill_columns(store, batch_size=10)

    assert first.updated == 1
    assert second.updated == 0
    assert second.scanned == 1
