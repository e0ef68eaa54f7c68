from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Any, Mapping, Sequence

from auditsync.core.errors import MalformedEventError
from auditsync.domain.events import ActivityEvent, ActorKind, TenantConfig
from auditsync.services.categorizer import Categorizer, categorize


# Ordered alias lists: the first populated candidate wins.
OPERATION_ALIASES = ("Operation", "Activity")
USER_ID_ALIASES = ("UserId", "userId")
WORKSPACE_NAME_ALIASES = ("WorkspaceName", "WorkSpaceName", "workspaceName", "FolderDisplayName", "LakehouseName")
WORKSPACE_ID_ALIASES = ("WorkspaceId", "workspaceId", "FolderObjectId")
ITEM_NAME_ALIASES = (
    "ArtifactName",
    "ReportName",
    "DashboardName",
    "DatasetName",
    "DataflowName",
    "ObjectDisplayName",
    "FileName",
    "ItemName",
    "ModelName",
    "ObjectId",
)
# Named fields only; ObjectId is usually a GUID, which the backfill must not write back.
ITEM_NAME_BACKFILL_ALIASES = ITEM_NAME_ALIASES[:ITEM_NAME_ALIASES.index("ObjectId")]
ITEM_ID_ALIASES = ("ArtifactId", "ReportId", "DashboardId", "DatasetId", "DataflowId", "ObjectId", "ItemId")
ITEM_TYPE_ALIASES = ("ItemType", "ArtifactType", "ObjectType")
CAPACITY_ID_ALIASES = ("CapacityId",)
CAPACITY_NAME_ALIASES = ("CapacityName",)
CLIENT_IP_ALIASES = ("ClientIP", "ClientIp", "clientIP", "IpAddress", "IPAddress")
USER_AGENT_ALIASES = ("UserAgent", "userAgent", "Browser")
USER_KEY_ALIASES = ("UserKey",)
ORGANIZATION_ID_ALIASES = ("OrganizationId",)
RESULT_STATUS_ALIASES = ("ResultStatus", "resultStatus")
FAILURE_REASON_ALIASES = ("FailureReason", "ErrorMessage", "Error", "failureReason")
REQUEST_ID_ALIASES = ("RequestId", "requestId")
DISTRIBUTION_METHOD_ALIASES = ("DistributionMethod", "SharingAction")
CONSUMED_ARTIFACT_TYPE_ALIASES = ("ConsumedArtifactType", "ArtifactType")

# The platform's own service principal shows up as the actor of automatic operations.
SYSTEM_ACTOR_IDS = frozenset({"00000009-0000-0000-c000-000000000000", "unknown"})
UNKNOWN_USER = "unknown"

_GUID_PREFIX = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-", re.IGNORECASE)
_URL_DATA_PATH = re.compile(r"/(?:Files|Tables)/(.+?)(?:\?|$)", re.IGNORECASE)
_EMPTY_MARKERS = frozenset({"", "-"})


def _clean(value: Any) -> str | None:
    # Treat None, blank strings and the "-" placeholder as absent.
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    if text in _EMPTY_MARKERS:
        return None
    return text


def resolve_alias(raw: Mapping[str, Any], aliases: Sequence[str]) -> str | None:
    for key in aliases:
        value = _clean(raw.get(key))
        if value is not None:
            return value
    return None


def is_guid_like(value: str | None) -> bool:
    return bool(value) and bool(_GUID_PREFIX.match(value))


def extract_path_from_url(url: str | None) -> str | None:
    # Prefer the data path after /Files/ or /Tables/, else the last path segment.
    if not url:
        return None
    match = _URL_DATA_PATH.search(url)
    if match:
        return match.group(1)
    path = url.split("?", 1)[0].split("#", 1)[0]
    if "://" in path:
        path = path.split("://", 1)[1]
        path = path.split("/", 1)[1] if "/" in path else ""
    segments = [segment for segment in path.split("/") if segment]
    return segments[-1] if segments else None


def classify_actor(user_id: str) -> ActorKind:
    if user_id in SYSTEM_ACTOR_IDS:
        return "system"
    if "@" in user_id:
        return "user"
    if is_guid_like(user_id):
        return "app"
    return "user"


def _parse_is_success(value: Any) -> bool:
    # Success unless the payload says false explicitly.
    if value is False:
        return False
    if isinstance(value, str) and value.strip().lower() == "false":
        return False
    return True


def _parse_timestamp(value: Any, fallback_day: date | None) -> datetime:
    text = _clean(value)
    if text is None:
        if fallback_day is None:
            raise MalformedEventError("event has no CreationTime")
        return datetime.combine(fallback_day, time.min, tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise MalformedEventError(f"unparseable CreationTime {text!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def resolve_item_name(raw: Mapping[str, Any]) -> str | None:
    return resolve_alias(raw, ITEM_NAME_ALIASES) or extract_path_from_url(_clean(raw.get("RequestUrl")))


def normalize(
    raw: Any,
    tenant: TenantConfig,
    *,
    day: date | None = None,
    categorizer: Categorizer | None = None,
) -> ActivityEvent:
    # Map one untyped upstream event into the canonical record; raises MalformedEventError.
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"event payload is {type(raw).__name__}, expected an object")
    activity_id = _clean(raw.get("Id"))
    if activity_id is None:
        raise MalformedEventError("event has no Id")
    timestamp = _parse_timestamp(raw.get("CreationTime"), day)
    operation = resolve_alias(raw, OPERATION_ALIASES)
    if operation is None:
        raise MalformedEventError(f"event {activity_id} has no Operation")
    classification = categorizer.categorize(operation) if categorizer else categorize(operation)
    user_id = resolve_alias(raw, USER_ID_ALIASES) or UNKNOWN_USER

    return ActivityEvent(
        activity_id=activity_id,
        tenant_id=tenant.id,
        tenant_label=tenant.label,
        timestamp=timestamp,
        date=timestamp.date(),
        operation=operation,
        user_id=user_id,
        actor_kind=classify_actor(user_id),
        user_key=resolve_alias(raw, USER_KEY_ALIASES),
        organization_id=resolve_alias(raw, ORGANIZATION_ID_ALIASES),
        workspace_name=resolve_alias(raw, WORKSPACE_NAME_ALIASES),
        workspace_id=resolve_alias(raw, WORKSPACE_ID_ALIASES),
        item_name=resolve_item_name(raw),
        item_id=resolve_alias(raw, ITEM_ID_ALIASES),
        item_type=resolve_alias(raw, ITEM_TYPE_ALIASES),
        capacity_id=resolve_alias(raw, CAPACITY_ID_ALIASES),
        capacity_name=resolve_alias(raw, CAPACITY_NAME_ALIASES),
        client_ip=resolve_alias(raw, CLIENT_IP_ALIASES),
        user_agent=resolve_alias(raw, USER_AGENT_ALIASES),
        result_status=resolve_alias(raw, RESULT_STATUS_ALIASES),
        failure_reason=resolve_alias(raw, FAILURE_REASON_ALIASES),
        request_id=resolve_alias(raw, REQUEST_ID_ALIASES),
        distribution_method=resolve_alias(raw, DISTRIBUTION_METHOD_ALIASES),
        consumed_artifact_type=resolve_alias(raw, CONSUMED_ARTIFACT_TYPE_ALIASES),
        is_success=_parse_is_success(raw.get("IsSuccess")),
        category=classification.category,
        severity=classification.severity,
        raw_payload=dict(raw),
    )


# Columns the backfill job may fill from a stored raw payload, with their resolver.
_BACKFILL_RESOLVERS = {
    "workspace_name": lambda raw: resolve_alias(raw, WORKSPACE_NAME_ALIASES),
    "workspace_id": lambda raw: resolve_alias(raw, WORKSPACE_ID_ALIASES),
    "item_name": lambda raw: resolve_alias(raw, ITEM_NAME_BACKFILL_ALIASES),
    "item_type": lambda raw: resolve_alias(raw, ITEM_TYPE_ALIASES),
    "capacity_name": lambda raw: resolve_alias(raw, CAPACITY_NAME_ALIASES),
    "client_ip": lambda raw: resolve_alias(raw, CLIENT_IP_ALIASES),
    "user_agent": lambda raw: resolve_alias(raw, USER_AGENT_ALIASES),
    "result_status": lambda raw: resolve_alias(raw, RESULT_STATUS_ALIASES),
    "failure_reason": lambda raw: resolve_alias(raw, FAILURE_REASON_ALIASES),
    "request_id": lambda raw: resolve_alias(raw, REQUEST_ID_ALIASES),
    "distribution_method": lambda raw: resolve_alias(raw, DISTRIBUTION_METHOD_ALIASES),
    "consumed_artifact_type": lambda raw: resolve_alias(raw, CONSUMED_ARTIFACT_TYPE_ALIASES),
}

BACKFILL_COLUMNS = tuple(_BACKFILL_RESOLVERS)


def rederive_columns(raw: Mapping[str, Any], current: Mapping[str, Any]) -> dict[str, str]:
    # Compute column updates from a stored payload; never overwrites a real value.
    updates: dict[str, str] = {}
    for column, resolver in _BACKFILL_RESOLVERS.items():
        existing = _clean(current.get(column))
        replaceable = existing is None or (column == "item_name" and is_guid_like(existing))
        if not replaceable:
            continue
        value = resolver(raw)
        if value is not None and value != existing and not (column == "item_name" and is_guid_like(value)):
            updates[column] = value
    return updates
