from __future__ import annotations

import argparse
import asyncio

from auditsync.core.config import get_settings
from auditsync.core.logging import configure_logging
from auditsync.persistence.store import ActivityStore
from auditsync.services.maintenance import backfill_columns


async def _run_backfill(batch_size: int | None) -> None:
    # Fill promoted columns for rows stored before those columns existed.
    settings = get_settings()
    store = ActivityStore.open(settings=settings)
    try:
        result = await backfill_columns(store, batch_size=batch_size, settings=settings)
    finally:
        await store.close()
    print(f"scanned={result.scanned}")
    print(f"updated={result.updated}")
    print(f"batches={result.batches}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill activity columns from stored raw payloads")
    parser.add_argument("--batch-size", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run_backfill(args.batch_size))


if __name__ == "__main__":
    main()
