from __future__ import annotations

import asyncio
import logging
import math
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from auditsync.core.config import Settings, get_settings, load_tenants
from auditsync.core.errors import RunInProgressError
from auditsync.core.logging import configure_logging
from auditsync.services.extractor import run_time_budget_s
from auditsync.services.orchestrator import RunResult
from auditsync.services.runtime import open_runtime
from auditsync.services.schedule import describe_cron, parse_cron_expression


logger = logging.getLogger(__name__)


def extraction_job_timeout_s(settings: Settings) -> int:
    # arq cancels jobs past their timeout, so it must sit above the longest run the caps allow.
    if settings.extract_job_timeout_s is not None:
        return settings.extract_job_timeout_s
    days = max(settings.max_backfill_days, settings.initial_extract_days, settings.extract_days_back)
    budget = run_time_budget_s(settings, tenants=len(load_tenants(settings)), days=days)
    return math.ceil(budget) + 60


def summarize_run(result: RunResult | None) -> dict[str, Any]:
    # Keep job results small and JSON-friendly for arq's result store.
    if result is None:
        return {"status": "skipped"}
    return {
        "status": "success" if result.ok else "partial",
        "trigger": result.trigger.value,
        "from_date": result.from_date.isoformat(),
        "to_date": result.to_date.isoformat(),
        "events_extracted": result.events_extracted,
        "inserted": result.inserted,
        "tenants": [
            {"tenant_id": outcome.tenant_id, "status": outcome.status, "error": outcome.error}
            for outcome in result.outcomes
        ],
    }


async def scheduled_extraction(ctx) -> dict[str, Any]:
    # Nightly run; skipped rather than queued when another run is active.
    return summarize_run(await ctx["runtime"].orchestrator.run_scheduled())


async def manual_extraction(ctx, days: int | None = None, include_today: bool = False) -> dict[str, Any]:
    try:
        result = await ctx["runtime"].orchestrator.trigger_manual(days, include_today=include_today)
    except RunInProgressError as exc:
        return {"status": "conflict", "error": str(exc)}
    return summarize_run(result)


async def backfill_extraction(ctx, days: int | None = None) -> dict[str, Any]:
    try:
        result = await ctx["runtime"].orchestrator.trigger_backfill(days)
    except RunInProgressError as exc:
        return {"status": "conflict", "error": str(exc)}
    return summarize_run(result)


async def _bootstrap(ctx) -> None:
    # Failures are logged; the nightly cron retries naturally on the next tick.
    try:
        await ctx["runtime"].orchestrator.bootstrap()
    except Exception as exc:  # noqa: BLE001 - background task must not die silently
        logger.error("bootstrap_failed error=%s", exc, exc_info=exc)


async def _startup(ctx) -> None:
    # Open the store and HTTP client once per worker process.
    settings = get_settings()
    configure_logging(settings.log_level)
    ctx["runtime"] = open_runtime(settings, redis=ctx.get("redis"))
    logger.info("extraction_worker_started schedule=%s", describe_cron(settings.extract_cron))
    ctx["bootstrap_task"] = asyncio.create_task(_bootstrap(ctx))


async def _shutdown(ctx) -> None:
    # A bootstrap run in flight finishes and logs before the store closes.
    task = ctx.get("bootstrap_task")
    if task is not None:
        await task
    runtime = ctx.get("runtime")
    if runtime is not None:
        await runtime.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.extract_queue_name
    job_timeout = extraction_job_timeout_s(settings)
    max_tries = 1
    functions = [manual_extraction, backfill_extraction]
    cron_jobs = [
        cron(
            scheduled_extraction,
            name="scheduled_extraction",
            timeout=job_timeout,
            **parse_cron_expression(settings.extract_cron),
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
