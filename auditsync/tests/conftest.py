from __future__ import annotations

import pytest

from auditsync.core.config import Settings
from auditsync.persistence.store import ActivityStore
from auditsync.tests.utils.factories import FIXED_NOW, make_settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    # A file-backed SQLite database keeps every pooled connection on the same schema.
    return make_settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'auditsync.db'}")


@pytest.fixture
async def store(settings: Settings):
    store = ActivityStore.open(settings=settings, time_provider=lambda: FIXED_NOW)
    await store.create_schema()
    yield store
    await store.close()
