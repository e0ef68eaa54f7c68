from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from auditsync.core.errors import MalformedEventError
from auditsync.services.normalizer import (
    classify_actor,
    extract_path_from_url,
    normalize,
    rederive_columns,
)
from auditsync.tests.utils.factories import make_tenant, raw_event


def test_workspace_name_alias_order() -> None:
    raw = raw_event("a1", WorkspaceName="Finance", FolderDisplayName="Legacy Folder")
    event = normalize(raw, make_tenant())
    assert event.workspace_name == "Finance"


def test_workspace_name_falls_through_empty_candidates() -> None:
    raw = raw_event("a1", WorkspaceName="", WorkSpaceName="-", FolderDisplayName="Legacy Folder")
    assert normalize(raw, make_tenant()).workspace_name == "Legacy Folder"


def test_item_name_falls_back_to_request_url_path() -> None:
    raw = raw_event(
        "a1",
        operation="ReadFileOrGetBlob",
        RequestUrl="https://onelake.dfs.fabric.microsoft.com/ws/lh.Lakehouse/Files/raw/sales.csv?action=read",
    )
    assert normalize(raw, make_tenant()).item_name == "raw/sales.csv"


def test_extract_path_uses_last_segment_without_data_marker() -> None:
    assert extract_path_from_url("https://host/v1/workspaces/abc/items/report-1?x=1") == "report-1"
    assert extract_path_from_url(None) is None


def test_normalize_maps_core_fields() -> None:
    tenant = make_tenant("fabrikam")
    raw = raw_event(
        "evt-1",
        operation="DeleteReport",
        day="2025-01-02",
        ReportName="Quarterly",
        ClientIP="10.0.0.1",
        IsSuccess="false",
    )
    event = normalize(raw, tenant)
    assert event.activity_id == "evt-1"
    assert event.tenant_id == "fabrikam"
    assert event.tenant_label == "Fabrikam"
    assert event.timestamp == datetime(2025, 1, 2, 10, 15, tzinfo=timezone.utc)
    assert event.date == date(2025, 1, 2)
    assert (event.category, event.severity) == ("reports", "critical")
    assert event.item_name == "Quarterly"
    assert event.client_ip == "10.0.0.1"
    assert event.is_success is False
    assert event.actor_kind == "user"
    assert event.raw_payload["Id"] == "evt-1"


def test_activity_alias_used_when_operation_missing() -> None:
    raw = raw_event("a1")
    del raw["Operation"]
    raw["Activity"] = "ViewDashboard"
    assert normalize(raw, make_tenant()).operation == "ViewDashboard"


def test_missing_user_defaults_to_unknown_system_actor() -> None:
    raw = raw_event("a1")
    del raw["UserId"]
    event = normalize(raw, make_tenant())
    assert event.user_id == "unknown"
    assert event.actor_kind == "system"


def test_missing_creation_time_uses_requested_day() -> None:
    raw = raw_event("a1")
    del raw["CreationTime"]
    event = normalize(raw, make_tenant(), day=date(2025, 1, 3))
    assert event.timestamp == datetime(2025, 1, 3, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda raw: raw.pop("Id"),
        lambda raw: raw.pop("Operation"),
        lambda raw: raw.update(CreationTime="not-a-time"),
    ],
)
def test_malformed_events_raise(mutate) -> None:
    raw = raw_event("a1")
    mutate(raw)
    with pytest.raises(MalformedEventError):
        normalize(raw, make_tenant())


def test_non_mapping_payload_is_malformed() -> None:
    with pytest.raises(MalformedEventError):
        normalize(["not", "an", "event"], make_tenant())


def test_classify_actor() -> None:
    assert classify_actor("bob@contoso.com") == "user"
    assert classify_actor("00000009-0000-0000-c000-000000000000") == "system"
    assert classify_actor("3f2504e0-4f89-11d3-9a0c-0305e82c3301") == "app"


def test_rederive_fills_only_absent_columns() -> None:
    raw = raw_event("a1", WorkspaceName="Finance", ReportName="Quarterly", ClientIP="10.0.0.9")
    updates = rederive_columns(raw, {"workspace_name": None, "item_name": "Existing", "client_ip": ""})
    assert updates == {"workspace_name": "Finance", "client_ip": "10.0.0.9"}


def test_rederive_replaces_guid_item_name_but_never_writes_one() -> None:
    guid = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"
    named = raw_event("a1", ReportName="Quarterly", ObjectId=guid)
    assert rederive_columns(named, {"item_name": guid})["item_name"] == "Quarterly"
    unnamed = raw_event("a2", ObjectId=guid)
    assert "item_name" not in rederive_columns(unnamed, {"item_name": None})
