from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Sequence
from uuid import uuid4

from redis.exceptions import RedisError

from auditsync.core.config import Settings, get_settings
from auditsync.core.errors import AuditSyncError, RunInProgressError, StoreError, StoreUnavailableError
from auditsync.domain.events import ExtractionStatus, TenantConfig
from auditsync.persistence.store import ActivityStore
from auditsync.services.extractor import ActivityExtractor


logger = logging.getLogger(__name__)

RUN_LOCK_KEY = "auditsync:extract:run_lock"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class RunTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    BACKFILL = "backfill"
    BOOTSTRAP = "bootstrap"


@dataclass(slots=True)
class RunLease:
    token: str
    redis_held: bool
    renewal: asyncio.Task[None] | None = None


class RunGuard:
    # Single-flight: reject new runs while one is active, never queue them.
    def __init__(
        self,
        *,
        redis: Any | None = None,
        lock_key: str = RUN_LOCK_KEY,
        ttl_s: int = 7200,
        renew_every_s: float | None = None,
    ) -> None:
        self._mutex = threading.Lock()
        self._state = RunState.IDLE
        self._redis = redis
        self._lock_key = lock_key
        self._ttl_s = max(5, int(ttl_s))
        # The lock is extended while held, so its TTL only bounds how long a crashed holder blocks.
        self._renew_every_s = renew_every_s if renew_every_s is not None else self._ttl_s / 3

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is RunState.RUNNING

    def _claim_local(self) -> bool:
        with self._mutex:
            if self._state is RunState.RUNNING:
                return False
            self._state = RunState.RUNNING
            return True

    def _clear_local(self) -> None:
        with self._mutex:
            self._state = RunState.IDLE

    async def acquire(self) -> RunLease | None:
        if not self._claim_local():
            return None
        token = uuid4().hex
        if self._redis is None:
            return RunLease(token=token, redis_held=False)
        try:
            acquired = await self._redis.set(self._lock_key, token, nx=True, ex=self._ttl_s)
        except RedisError as exc:
            # Fall back to the in-process guard when Redis is unreachable.
            logger.warning("run_lock_redis_unavailable error=%s", exc)
            return RunLease(token=token, redis_held=False)
        if not acquired:
            self._clear_local()
            return None
        return RunLease(token=token, redis_held=True, renewal=asyncio.create_task(self._renew(token)))

    async def _owned(self, token: str) -> bool:
        current = await self._redis.get(self._lock_key)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        return value == token

    async def _renew(self, token: str) -> None:
        while True:
            await asyncio.sleep(self._renew_every_s)
            try:
                if not await self._owned(token):
                    logger.warning("run_lock_lost key=%s", self._lock_key)
                    return
                await self._redis.expire(self._lock_key, self._ttl_s)
            except RedisError as exc:
                logger.warning("run_lock_renew_failed error=%s", exc)

    async def release(self, lease: RunLease) -> None:
        # Release only if this process still owns the token to avoid clobbering a newer holder.
        if lease.renewal is not None:
            lease.renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await lease.renewal
        try:
            if lease.redis_held and self._redis is not None and await self._owned(lease.token):
                await self._redis.delete(self._lock_key)
        except RedisError as exc:
            logger.warning("run_lock_release_failed error=%s", exc)
        finally:
            self._clear_local()


def compute_date_range(days_back: int, *, include_today: bool = False, today: date) -> tuple[date, date]:
    # The upstream publishes with roughly a day of delay, so windows end yesterday by default.
    if days_back < 1:
        raise ValueError("days_back must be at least 1")
    to_date = today if include_today else today - timedelta(days=1)
    return to_date - timedelta(days=days_back - 1), to_date


@dataclass(frozen=True)
class TenantRunOutcome:
    tenant_id: str
    tenant_label: str
    status: ExtractionStatus
    events_extracted: int = 0
    inserted: int = 0
    failed_days: int = 0
    skipped_events: int = 0
    error: str | None = None


@dataclass
class RunResult:
    trigger: RunTrigger
    from_date: date
    to_date: date
    started_at: datetime
    completed_at: datetime | None = None
    outcomes: list[TenantRunOutcome] = field(default_factory=list)

    @property
    def events_extracted(self) -> int:
        return sum(outcome.events_extracted for outcome in self.outcomes)

    @property
    def inserted(self) -> int:
        return sum(outcome.inserted for outcome in self.outcomes)

    @property
    def ok(self) -> bool:
        return all(outcome.status == "success" for outcome in self.outcomes)


@dataclass(frozen=True)
class OrchestratorStatus:
    running: bool
    last_run: datetime | None
    last_result: RunResult | None
    events_extracted: int


class ExtractionOrchestrator:
    def __init__(
        self,
        store: ActivityStore,
        extractor: ActivityExtractor,
        tenants: Sequence[TenantConfig],
        *,
        settings: Settings | None = None,
        guard: RunGuard | None = None,
        redis: Any | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._extractor = extractor
        self._tenants = list(tenants)
        self._guard = guard or RunGuard(redis=redis, ttl_s=self._settings.run_lock_ttl_s)
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))
        self._last_run: datetime | None = None
        self._last_result: RunResult | None = None

    def _today(self) -> date:
        return self._time_provider().date()

    def status(self) -> OrchestratorStatus:
        last = self._last_result
        return OrchestratorStatus(
            running=self._guard.running,
            last_run=self._last_run,
            last_result=last,
            events_extracted=last.events_extracted if last is not None else 0,
        )

    async def _run_tenant(self, tenant: TenantConfig, from_date: date, to_date: date) -> TenantRunOutcome:
        # Each tenant gets its own log entry; only an unreachable store escapes.
        started_at = self._time_provider()
        try:
            extraction = await self._extractor.run_tenant(tenant, from_date, to_date)
        except StoreError:
            raise
        except AuditSyncError as exc:
            logger.error("tenant_extraction_failed tenant=%s error=%s", tenant.id, exc)
            await self._store.log_extraction(
                tenant.id, to_date, 0, "error", str(exc), started_at=started_at
            )
            return TenantRunOutcome(tenant_id=tenant.id, tenant_label=tenant.label, status="error", error=str(exc))

        try:
            inserted = await self._store.insert(extraction.events)
        except StoreUnavailableError:
            raise
        except StoreError as exc:
            # The database rejected this tenant's batch; nothing of it was applied.
            logger.error("tenant_insert_failed tenant=%s events=%s error=%s", tenant.id, len(extraction.events), exc)
            await self._store.log_extraction(
                tenant.id, to_date, len(extraction.events), "error", str(exc), started_at=started_at
            )
            return TenantRunOutcome(
                tenant_id=tenant.id,
                tenant_label=tenant.label,
                status="error",
                events_extracted=len(extraction.events),
                failed_days=len(extraction.failed_days),
                skipped_events=extraction.skipped_events,
                error=str(exc),
            )
        status: ExtractionStatus = "success" if extraction.ok else "error"
        error = extraction.error_summary()
        await self._store.log_extraction(
            tenant.id,
            to_date,
            len(extraction.events),
            status,
            error,
            started_at=started_at,
            inserted_count=inserted,
        )
        return TenantRunOutcome(
            tenant_id=tenant.id,
            tenant_label=tenant.label,
            status=status,
            events_extracted=len(extraction.events),
            inserted=inserted,
            failed_days=len(extraction.failed_days),
            skipped_events=extraction.skipped_events,
            error=error,
        )

    async def run_extraction(
        self, from_date: date, to_date: date, *, trigger: RunTrigger = RunTrigger.MANUAL
    ) -> RunResult:
        # Callers must hold the run guard; tenants run sequentially to share the request budget.
        result = RunResult(trigger=trigger, from_date=from_date, to_date=to_date, started_at=self._time_provider())
        logger.info(
            "extraction_run_start trigger=%s from=%s to=%s tenants=%s",
            trigger.value,
            from_date,
            to_date,
            len(self._tenants),
        )
        for index, tenant in enumerate(self._tenants):
            if index:
                await self._extractor.pause()
            result.outcomes.append(await self._run_tenant(tenant, from_date, to_date))
        result.completed_at = self._time_provider()
        self._last_run = result.completed_at
        self._last_result = result
        logger.info(
            "extraction_run_done trigger=%s extracted=%s inserted=%s ok=%s",
            trigger.value,
            result.events_extracted,
            result.inserted,
            result.ok,
        )
        return result

    async def _guarded(self, trigger: RunTrigger, days_back: int, include_today: bool) -> RunResult:
        lease = await self._guard.acquire()
        if lease is None:
            logger.warning("extraction_run_rejected trigger=%s reason=in_progress", trigger.value)
            raise RunInProgressError("An extraction run is already in progress")
        try:
            from_date, to_date = compute_date_range(days_back, include_today=include_today, today=self._today())
            return await self.run_extraction(from_date, to_date, trigger=trigger)
        finally:
            await self._guard.release(lease)

    async def trigger_manual(self, days: int | None = None, *, include_today: bool = False) -> RunResult:
        return await self._guarded(RunTrigger.MANUAL, days or self._settings.extract_days_back, include_today)

    async def trigger_backfill(self, days: int | None = None) -> RunResult:
        # Clamp to the history the upstream still retains.
        cap = self._settings.max_backfill_days
        days_back = min(days or cap, cap)
        return await self._guarded(RunTrigger.BACKFILL, days_back, False)

    async def run_scheduled(self) -> RunResult | None:
        try:
            return await self._guarded(RunTrigger.SCHEDULED, self._settings.extract_days_back, False)
        except RunInProgressError:
            logger.warning("scheduled_extraction_skipped reason=in_progress")
            return None

    async def bootstrap(self) -> RunResult | None:
        # First start against an empty log pulls a longer history before the nightly cadence takes over.
        # The history check runs under the guard so a run finishing concurrently is always seen.
        lease = await self._guard.acquire()
        if lease is None:
            logger.warning("bootstrap_skipped reason=in_progress")
            return None
        try:
            if await self._store.last_extraction() is not None:
                logger.info("bootstrap_skipped reason=history_present")
                return None
            logger.info("bootstrap_start days=%s", self._settings.initial_extract_days)
            from_date, to_date = compute_date_range(self._settings.initial_extract_days, today=self._today())
            return await self.run_extraction(from_date, to_date, trigger=RunTrigger.BOOTSTRAP)
        finally:
            await self._guard.release(lease)
