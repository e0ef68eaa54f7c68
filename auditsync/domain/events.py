from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


Severity = Literal["info", "warning", "critical"]
ActorKind = Literal["user", "app", "system"]
ExtractionStatus = Literal["success", "error"]


class TenantConfig(BaseModel):
    # Injected at process start and never mutated; the secret is kept out of reprs.
    model_config = ConfigDict(frozen=True)

    id: str
    directory_id: str
    client_id: str
    client_secret: str = Field(repr=False)
    label: str


@dataclass(frozen=True)
class Classification:
    category: str
    severity: Severity


@dataclass(frozen=True)
class ActivityEvent:
    # Flat canonical record; optional fields are None when no alias carried a value.
    activity_id: str
    tenant_id: str
    timestamp: datetime
    date: date
    operation: str
    user_id: str
    category: str
    severity: Severity
    is_success: bool = True
    actor_kind: ActorKind = "user"
    tenant_label: str | None = None
    user_key: str | None = None
    organization_id: str | None = None
    workspace_name: str | None = None
    workspace_id: str | None = None
    item_name: str | None = None
    item_id: str | None = None
    item_type: str | None = None
    capacity_id: str | None = None
    capacity_name: str | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    result_status: str | None = None
    failure_reason: str | None = None
    request_id: str | None = None
    distribution_method: str | None = None
    consumed_artifact_type: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def as_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ExtractionLogEntry:
    id: int
    tenant_id: str
    date_extracted: date
    events_count: int
    inserted_count: int
    started_at: datetime | None
    completed_at: datetime
    status: ExtractionStatus
    error_message: str | None = None
