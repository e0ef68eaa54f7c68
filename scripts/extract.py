from __future__ import annotations

import argparse
import asyncio

from auditsync.core.config import get_settings
from auditsync.core.errors import RunInProgressError
from auditsync.core.logging import configure_logging
from auditsync.services.runtime import open_runtime


async def _run_extraction(days: int | None, include_today: bool, backfill: bool) -> int:
    # Run one extraction in-process for operators; no worker or Redis needed.
    settings = get_settings()
    runtime = open_runtime(settings)
    try:
        orchestrator = runtime.orchestrator
        if backfill:
            result = await orchestrator.trigger_backfill(days)
        else:
            result = await orchestrator.trigger_manual(days, include_today=include_today)
    except RunInProgressError as exc:
        print(f"status=conflict error={exc}")
        return 2
    finally:
        await runtime.close()
    print(f"trigger={result.trigger.value}")
    print(f"from_date={result.from_date.isoformat()} to_date={result.to_date.isoformat()}")
    for outcome in result.outcomes:
        print(
            f"tenant={outcome.tenant_id} status={outcome.status} events={outcome.events_extracted} "
            f"inserted={outcome.inserted} failed_days={outcome.failed_days}"
        )
    print(f"events_extracted={result.events_extracted} inserted={result.inserted}")
    return 0 if result.ok else 1


def main() -> None:
    # Parse CLI flags for manual and backfill extraction runs.
    parser = argparse.ArgumentParser(description="Extract activity events for all configured tenants")
    parser.add_argument("--days", type=int, default=None, help="days back from yesterday (or today)")
    parser.add_argument("--include-today", action="store_true", help="include partial same-day data")
    parser.add_argument("--backfill", action="store_true", help="backfill up to the upstream retention cap")
    args = parser.parse_args()
    if args.days is not None and args.days < 1:
        parser.error("--days must be at least 1")
    configure_logging()
    raise SystemExit(asyncio.run(_run_extraction(args.days, args.include_today, args.backfill)))


if __name__ == "__main__":
    main()
