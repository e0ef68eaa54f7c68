from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import ColumnElement, or_

from auditsync.domain.models import Activity


class ActivityFilters(BaseModel):
    # Mirrors the dashboard query-string vocabulary; every field is optional and ANDed.
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    tenant: str | None = None
    user: str | None = None
    category: str | None = None
    severity: str | None = None
    operation: str | None = None
    from_date: date | None = Field(default=None, alias="from")
    to_date: date | None = Field(default=None, alias="to")
    days: int | None = Field(default=None, ge=1)
    search: str | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    @field_validator("tenant", "user", "category", "severity", "operation", "search", mode="before")
    @classmethod
    def _blank_is_absent(cls, value: Any) -> Any:
        # Query strings send "" for unset inputs.
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("from_date", "to_date", "days", "limit", mode="before")
    @classmethod
    def _blank_scalar_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> "ActivityFilters":
        known = {key: value for key, value in params.items() if key in _QUERY_KEYS}
        return cls.model_validate(known)

    @property
    def has_date_filter(self) -> bool:
        return self.days is not None or self.from_date is not None or self.to_date is not None

    def with_default_window(self, default_days: int) -> "ActivityFilters":
        # Never scan the whole table by default.
        if self.has_date_filter:
            return self
        return self.model_copy(update={"days": default_days})


_QUERY_KEYS = frozenset(
    {"tenant", "user", "category", "severity", "operation", "from", "to", "from_date", "to_date", "days", "search", "limit", "offset"}
)


def _like(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def window_start(days: int, today: date) -> date:
    # "Last N days" includes today, so the series never spans more than N calendar days.
    return today - timedelta(days=days - 1)


def build_predicates(filters: ActivityFilters, *, today: date) -> list[ColumnElement[bool]]:
    predicates: list[ColumnElement[bool]] = []
    if filters.tenant:
        predicates.append(Activity.tenant_id == filters.tenant)
    if filters.user:
        predicates.append(Activity.user_id.ilike(_like(filters.user), escape="\\"))
    if filters.category:
        predicates.append(Activity.category == filters.category)
    if filters.severity:
        predicates.append(Activity.severity == filters.severity)
    if filters.operation:
        predicates.append(Activity.operation == filters.operation)
    if filters.from_date:
        predicates.append(Activity.date >= filters.from_date)
    if filters.to_date:
        predicates.append(Activity.date <= filters.to_date)
    if filters.days:
        predicates.append(Activity.date >= window_start(filters.days, today))
    if filters.search:
        pattern = _like(filters.search)
        predicates.append(
            or_(
                Activity.operation.ilike(pattern, escape="\\"),
                Activity.user_id.ilike(pattern, escape="\\"),
                Activity.item_name.ilike(pattern, escape="\\"),
                Activity.workspace_name.ilike(pattern, escape="\\"),
            )
        )
    return predicates
