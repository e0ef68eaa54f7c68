from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from auditsync.core.config import Settings, get_settings
from auditsync.persistence.store import ActivityStore
from auditsync.services.normalizer import BACKFILL_COLUMNS, rederive_columns


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnBackfillResult:
    scanned: int
    updated: int
    batches: int


async def backfill_columns(
    store: ActivityStore,
    *,
    batch_size: int | None = None,
    settings: Settings | None = None,
) -> ColumnBackfillResult:
    # Re-derive promoted columns from stored payloads; safe to run repeatedly.
    settings = settings or get_settings()
    size = max(1, int(batch_size or settings.backfill_batch_size))
    after_id = 0
    scanned = 0
    updated = 0
    batches = 0
    while True:
        rows = await store.fetch_raw_payload_batch(after_id=after_id, batch_size=size, columns=BACKFILL_COLUMNS)
        if not rows:
            break
        batches += 1
        updates: list[tuple[int, dict[str, Any]]] = []
        for row in rows:
            if isinstance(row.raw_payload, dict):
                values = rederive_columns(row.raw_payload, row.columns)
                if values:
                    updates.append((row.id, values))
        updated += await store.update_columns(updates)
        scanned += len(rows)
        after_id = rows[-1].id
        logger.info("column_backfill_batch batch=%s scanned=%s updated=%s", batches, scanned, updated)
        if len(rows) < size:
            break
    logger.info("column_backfill_done scanned=%s updated=%s batches=%s", scanned, updated, batches)
    return ColumnBackfillResult(scanned=scanned, updated=updated, batches=batches)
