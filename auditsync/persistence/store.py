from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import ColumnElement, Select, String, case, false, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from auditsync.core.config import Settings, get_settings
from auditsync.core.errors import StoreError, StoreUnavailableError
from auditsync.domain.events import ActivityEvent, ExtractionLogEntry, ExtractionStatus
from auditsync.domain.models import Activity, Base, ExtractionLog
from auditsync.persistence.db import create_engine, create_session_factory
from auditsync.persistence.filters import ActivityFilters, build_predicates


logger = logging.getLogger(__name__)

_EVENT_COLUMNS = tuple(
    column.name for column in Activity.__table__.columns if column.name not in {"id", "created_at"}
)

# Key columns are left alone so an overlong id fails loudly instead of colliding.
_CLIPPED_LENGTHS = {
    column.name: column.type.length
    for column in Activity.__table__.columns
    if isinstance(column.type, String) and column.type.length and column.name not in {"activity_id", "tenant_id"}
}

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError, OSError)


@dataclass(frozen=True)
class CategoryCount:
    category: str
    count: int


@dataclass(frozen=True)
class TenantCount:
    tenant_id: str
    tenant_label: str | None
    count: int


@dataclass(frozen=True)
class UserCount:
    user_id: str
    tenant_id: str
    count: int


@dataclass(frozen=True)
class DayCount:
    date: date
    total: int
    critical: int
    warning: int
    info: int


@dataclass
class ActivityStats:
    total: int = 0
    by_severity: dict[str, int] = field(default_factory=dict)
    by_category: list[CategoryCount] = field(default_factory=list)
    by_tenant: list[TenantCount] = field(default_factory=list)
    by_user: list[UserCount] = field(default_factory=list)
    # Oldest first.
    by_day: list[DayCount] = field(default_factory=list)
    failures: int = 0
    unique_users: int = 0


@dataclass(frozen=True)
class UserActivitySummary:
    user_id: str
    tenant_id: str
    tenant_label: str | None
    total: int
    critical: int
    warning: int
    failures: int
    last_activity: datetime | None


@dataclass(frozen=True)
class DateBounds:
    min_date: date | None
    max_date: date | None


@dataclass(frozen=True)
class RawPayloadRow:
    id: int
    raw_payload: dict[str, Any] | None
    columns: dict[str, Any]


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _severity_sum(severity: str) -> ColumnElement[Any]:
    return func.coalesce(func.sum(case((Activity.severity == severity, 1), else_=0)), 0)


def _failure_sum() -> ColumnElement[Any]:
    return func.coalesce(func.sum(case((Activity.is_success == false(), 1), else_=0)), 0)


def _to_event(row: Activity) -> ActivityEvent:
    return ActivityEvent(
        activity_id=row.activity_id,
        tenant_id=row.tenant_id,
        timestamp=_utc(row.timestamp),
        date=row.date,
        operation=row.operation,
        user_id=row.user_id,
        category=row.category,
        severity=row.severity,  # type: ignore[arg-type]
        is_success=bool(row.is_success),
        actor_kind=row.actor_kind,  # type: ignore[arg-type]
        tenant_label=row.tenant_label,
        user_key=row.user_key,
        organization_id=row.organization_id,
        workspace_name=row.workspace_name,
        workspace_id=row.workspace_id,
        item_name=row.item_name,
        item_id=row.item_id,
        item_type=row.item_type,
        capacity_id=row.capacity_id,
        capacity_name=row.capacity_name,
        client_ip=row.client_ip,
        user_agent=row.user_agent,
        result_status=row.result_status,
        failure_reason=row.failure_reason,
        request_id=row.request_id,
        distribution_method=row.distribution_method,
        consumed_artifact_type=row.consumed_artifact_type,
        raw_payload=dict(row.raw_payload or {}),
    )


def _to_log_entry(row: ExtractionLog) -> ExtractionLogEntry:
    return ExtractionLogEntry(
        id=row.id,
        tenant_id=row.tenant_id,
        date_extracted=row.date_extracted,
        events_count=row.events_count,
        inserted_count=row.inserted_count,
        started_at=_utc(row.started_at),
        completed_at=_utc(row.completed_at),  # type: ignore[arg-type]
        status=row.status,  # type: ignore[arg-type]
        error_message=row.error_message,
    )


def clip_bounded(row: dict[str, Any]) -> dict[str, Any]:
    # Free-form upstream text is cut to the declared column width.
    for column, length in _CLIPPED_LENGTHS.items():
        value = row.get(column)
        if isinstance(value, str) and len(value) > length:
            row[column] = value[:length]
    return row


def _store_error(message: str, exc: Exception) -> StoreError:
    if isinstance(exc, _UNAVAILABLE_ERRORS):
        return StoreUnavailableError(f"{message}: {exc}")
    return StoreError(f"{message}: {exc}")


def _dedupe(events: Iterable[ActivityEvent]) -> list[dict[str, Any]]:
    # Keep the first occurrence of each (activity_id, tenant_id) within one call.
    seen: set[tuple[str, str]] = set()
    rows: list[dict[str, Any]] = []
    for event in events:
        key = (event.activity_id, event.tenant_id)
        if key in seen:
            continue
        seen.add(key)
        row = event.as_row()
        rows.append(clip_bounded({column: row.get(column) for column in _EVENT_COLUMNS}))
    return rows


class ActivityStore:
    # Explicit store handle: open at process start, close at shutdown.
    def __init__(
        self,
        engine: AsyncEngine,
        *,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._settings = settings or get_settings()
        self._sessions = session_factory or create_session_factory(engine)
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))

    @classmethod
    def open(
        cls,
        database_url: str | None = None,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> "ActivityStore":
        settings = settings or get_settings()
        engine = create_engine(database_url, settings=settings)
        return cls(engine, settings=settings, time_provider=time_provider)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def close(self) -> None:
        await self._engine.dispose()

    async def create_schema(self) -> None:
        # Test and local-dev convenience; production schemas come from alembic.
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def _today(self) -> date:
        return self._time_provider().date()

    def _insert_statement(self, rows: list[dict[str, Any]]):
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(Activity).values(rows)
        elif dialect == "sqlite":
            stmt = sqlite.insert(Activity).values(rows)
        else:
            raise StoreError(f"unsupported database dialect: {dialect}")
        return stmt.on_conflict_do_nothing(index_elements=["activity_id", "tenant_id"]).returning(Activity.id)

    async def insert(self, events: Sequence[ActivityEvent]) -> int:
        # All chunks share one transaction so a crash never leaves a half-applied batch.
        rows = _dedupe(events)
        if not rows:
            return 0
        chunk_size = max(1, int(self._settings.store_insert_chunk_size))
        inserted = 0
        async with self._sessions() as session:
            try:
                async with session.begin():
                    for start in range(0, len(rows), chunk_size):
                        result = await session.execute(self._insert_statement(rows[start : start + chunk_size]))
                        inserted += len(result.scalars().all())
            except (SQLAlchemyError, OSError) as exc:
                logger.error("activity_insert_failed rows=%s error=%s", len(rows), exc)
                raise _store_error("activity insert failed", exc) from exc
        logger.info(
            "activity_insert_done submitted=%s inserted=%s duplicates=%s",
            len(events),
            inserted,
            len(events) - inserted,
        )
        return inserted

    def _resolve(self, filters: ActivityFilters | None) -> tuple[ActivityFilters, list[ColumnElement[bool]]]:
        resolved = (filters or ActivityFilters()).with_default_window(self._settings.query_default_days)
        return resolved, build_predicates(resolved, today=self._today())

    def _limit(self, filters: ActivityFilters) -> int:
        limit = filters.limit or self._settings.query_default_limit
        return min(limit, self._settings.query_max_limit)

    async def _read(self, stmt: Select[Any]) -> list[Any]:
        async with self._sessions() as session:
            try:
                result = await session.execute(stmt)
            except (SQLAlchemyError, OSError) as exc:
                raise _store_error("activity read failed", exc) from exc
            return list(result.all())

    async def query(self, filters: ActivityFilters | None = None) -> list[ActivityEvent]:
        resolved, predicates = self._resolve(filters)
        stmt = (
            select(Activity)
            .where(*predicates)
            .order_by(Activity.timestamp.desc(), Activity.id.desc())
            .offset(resolved.offset)
            .limit(self._limit(resolved))
        )
        rows = await self._read(stmt)
        return [_to_event(row[0]) for row in rows]

    async def count(self, filters: ActivityFilters | None = None) -> int:
        _, predicates = self._resolve(filters)
        rows = await self._read(select(func.count(Activity.id)).where(*predicates))
        return int(rows[0][0] or 0)

    async def stats(self, filters: ActivityFilters | None = None) -> ActivityStats:
        # Each grouping runs as its own query over the same predicate.
        _, predicates = self._resolve(filters)
        stats = ActivityStats()

        rows = await self._read(
            select(func.count(Activity.id), _failure_sum(), func.count(func.distinct(Activity.user_id))).where(
                *predicates
            )
        )
        total, failures, unique_users = rows[0]
        stats.total = int(total or 0)
        stats.failures = int(failures or 0)
        stats.unique_users = int(unique_users or 0)

        rows = await self._read(
            select(Activity.severity, func.count(Activity.id)).where(*predicates).group_by(Activity.severity)
        )
        stats.by_severity = {severity: int(count) for severity, count in rows}

        category_count = func.count(Activity.id).label("count")
        rows = await self._read(
            select(Activity.category, category_count)
            .where(*predicates)
            .group_by(Activity.category)
            .order_by(category_count.desc(), Activity.category)
        )
        stats.by_category = [CategoryCount(category=category, count=int(count)) for category, count in rows]

        tenant_count = func.count(Activity.id).label("count")
        rows = await self._read(
            select(Activity.tenant_id, func.max(Activity.tenant_label), tenant_count)
            .where(*predicates)
            .group_by(Activity.tenant_id)
            .order_by(tenant_count.desc(), Activity.tenant_id)
        )
        stats.by_tenant = [
            TenantCount(tenant_id=tenant_id, tenant_label=label, count=int(count)) for tenant_id, label, count in rows
        ]

        user_count = func.count(Activity.id).label("count")
        rows = await self._read(
            select(Activity.user_id, Activity.tenant_id, user_count)
            .where(*predicates)
            .group_by(Activity.user_id, Activity.tenant_id)
            .order_by(user_count.desc(), Activity.user_id)
            .limit(self._settings.stats_top_users)
        )
        stats.by_user = [
            UserCount(user_id=user_id, tenant_id=tenant_id, count=int(count)) for user_id, tenant_id, count in rows
        ]

        # Newest days are selected, then reversed so the series reads oldest-first.
        rows = await self._read(
            select(
                Activity.date,
                func.count(Activity.id),
                _severity_sum("critical"),
                _severity_sum("warning"),
                _severity_sum("info"),
            )
            .where(*predicates)
            .group_by(Activity.date)
            .order_by(Activity.date.desc())
            .limit(self._settings.stats_day_series_limit)
        )
        stats.by_day = [
            DayCount(date=day, total=int(total), critical=int(critical), warning=int(warning), info=int(info))
            for day, total, critical, warning, info in reversed(rows)
        ]
        return stats

    async def user_stats(self, filters: ActivityFilters | None = None) -> list[UserActivitySummary]:
        resolved, predicates = self._resolve(filters)
        total = func.count(Activity.id).label("total")
        rows = await self._read(
            select(
                Activity.user_id,
                Activity.tenant_id,
                func.max(Activity.tenant_label),
                total,
                _severity_sum("critical"),
                _severity_sum("warning"),
                _failure_sum(),
                func.max(Activity.timestamp),
            )
            .where(*predicates)
            .group_by(Activity.user_id, Activity.tenant_id)
            .order_by(total.desc(), Activity.user_id)
            .limit(self._limit(resolved))
        )
        return [
            UserActivitySummary(
                user_id=user_id,
                tenant_id=tenant_id,
                tenant_label=label,
                total=int(count),
                critical=int(critical),
                warning=int(warning),
                failures=int(failures),
                last_activity=_utc(last_activity),
            )
            for user_id, tenant_id, label, count, critical, warning, failures, last_activity in rows
        ]

    async def date_bounds(self) -> DateBounds:
        rows = await self._read(select(func.min(Activity.date), func.max(Activity.date)))
        min_date, max_date = rows[0]
        return DateBounds(min_date=min_date, max_date=max_date)

    async def log_extraction(
        self,
        tenant_id: str,
        date_extracted: date,
        events_count: int,
        status: ExtractionStatus,
        error: str | None = None,
        *,
        started_at: datetime | None = None,
        inserted_count: int = 0,
    ) -> ExtractionLogEntry:
        # Append-only; a row is never updated once written.
        entry = ExtractionLog(
            tenant_id=tenant_id,
            date_extracted=date_extracted,
            events_count=events_count,
            inserted_count=inserted_count,
            started_at=started_at,
            completed_at=self._time_provider(),
            status=status,
            error_message=error,
        )
        async with self._sessions() as session:
            try:
                async with session.begin():
                    session.add(entry)
            except (SQLAlchemyError, OSError) as exc:
                raise _store_error("extraction log write failed", exc) from exc
        logger.info(
            "extraction_logged tenant=%s date=%s status=%s events=%s inserted=%s",
            tenant_id,
            date_extracted,
            status,
            events_count,
            inserted_count,
        )
        return _to_log_entry(entry)

    async def last_extraction(self) -> ExtractionLogEntry | None:
        rows = await self._read(
            select(ExtractionLog).order_by(ExtractionLog.completed_at.desc(), ExtractionLog.id.desc()).limit(1)
        )
        return _to_log_entry(rows[0][0]) if rows else None

    async def list_extractions(self, *, tenant_id: str | None = None, limit: int = 50) -> list[ExtractionLogEntry]:
        stmt = select(ExtractionLog)
        if tenant_id:
            stmt = stmt.where(ExtractionLog.tenant_id == tenant_id)
        stmt = stmt.order_by(ExtractionLog.completed_at.desc(), ExtractionLog.id.desc()).limit(limit)
        return [_to_log_entry(row[0]) for row in await self._read(stmt)]

    async def fetch_raw_payload_batch(
        self, *, after_id: int, batch_size: int, columns: Sequence[str]
    ) -> list[RawPayloadRow]:
        # Keyset pagination on the primary key keeps each batch cheap on large tables.
        selected = [Activity.__table__.c[name] for name in columns]
        rows = await self._read(
            select(Activity.id, Activity.raw_payload, *selected)
            .where(Activity.id > after_id, Activity.raw_payload.is_not(None))
            .order_by(Activity.id)
            .limit(batch_size)
        )
        return [
            RawPayloadRow(id=row[0], raw_payload=row[1], columns=dict(zip(columns, row[2:])))
            for row in rows
        ]

    async def update_columns(self, updates: Sequence[tuple[int, dict[str, Any]]]) -> int:
        if not updates:
            return 0
        async with self._sessions() as session:
            try:
                async with session.begin():
                    for row_id, values in updates:
                        values = clip_bounded(dict(values))
                        await session.execute(update(Activity).where(Activity.id == row_id).values(**values))
            except (SQLAlchemyError, OSError) as exc:
                raise _store_error("column backfill update failed", exc) from exc
        return len(updates)
