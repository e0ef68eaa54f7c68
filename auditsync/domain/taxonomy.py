from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping


SEVERITIES: tuple[str, ...] = ("info", "warning", "critical")

DEFAULT_CATEGORY = "capacity"
DEFAULT_SEVERITY = "info"


@dataclass(frozen=True)
class Category:
    key: str
    label: str
    description: str


_CATEGORIES = (
    Category("reports", "Reports", "View, create, edit, export, print, share reports"),
    Category("dashboards", "Dashboards", "Dashboard and tile operations"),
    Category("datasets", "Semantic Models", "Dataset/model refresh, edit, parameters, connections"),
    Category("dataflows", "Dataflows", "Dataflow create, refresh, schedule, export"),
    Category("workspaces", "Workspaces", "Workspace create, update, delete, migrate, access"),
    Category("pipelines", "Deployment Pipelines", "ALM pipeline deploy, assign, configure"),
    Category("gateways", "Gateways", "Gateway cluster, datasource, credentials"),
    Category("apps", "Apps & Templates", "App install, publish, template app operations"),
    Category("capacity", "Capacity & Admin", "Capacity settings, admin feature switches, tenant keys"),
    Category("security", "Security & DLP", "Sensitivity labels, DLP, encryption, access controls"),
    Category("lakehouse", "Lakehouse", "Lakehouse files, folders, tables, shortcuts"),
    Category("warehouse", "Warehouse & SQL", "Warehouse, SQL analytics endpoint, datamarts"),
    Category("onelake", "OneLake Storage", "Blob, file, container, directory operations"),
    Category("git", "Git Integration", "Git connect, commit, branch, sync, undo"),
    Category("notebooks", "Notebooks & Spark", "Notebook sessions, Spark apps, environments"),
    Category("datascience", "Data Science & AI", "ML experiments, models, Copilot, OpenAI"),
    Category("scorecards", "Scorecards & Metrics", "Goals, scorecards, KPI tracking"),
    Category("subscriptions", "Subscriptions & Email", "Email subscriptions, comments, notifications"),
    Category("embed", "Embed & External", "Embed tokens, publish to web, external data shares"),
    Category("domains", "Domains & Governance", "Data domains, governance, VNet, managed endpoints"),
)

# Loaded once; read-only for the process lifetime.
CATEGORIES: Mapping[str, Category] = MappingProxyType({item.key: item for item in _CATEGORIES})


def is_known_category(key: str) -> bool:
    return key in CATEGORIES
