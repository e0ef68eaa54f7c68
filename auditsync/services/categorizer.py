from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from auditsync.core.errors import ConfigError
from auditsync.domain.events import Classification, Severity
from auditsync.domain.operations import FALLBACK_RULES, OPERATION_TABLE
from auditsync.domain.taxonomy import DEFAULT_CATEGORY, DEFAULT_SEVERITY, SEVERITIES, is_known_category


logger = logging.getLogger(__name__)

FallbackRule = tuple[tuple[str, ...], str, Severity]


class Categorizer:
    def __init__(
        self,
        table: Mapping[str, Classification] | None = None,
        rules: Sequence[FallbackRule] | None = None,
        default: Classification | None = None,
    ) -> None:
        self._table = dict(OPERATION_TABLE if table is None else table)
        # Lowercase needles once so matching stays a plain substring scan.
        self._rules = tuple(
            (tuple(needle.lower() for needle in needles), category, severity)
            for needles, category, severity in (FALLBACK_RULES if rules is None else rules)
        )
        self._default = default or Classification(category=DEFAULT_CATEGORY, severity=DEFAULT_SEVERITY)

    @property
    def table(self) -> Mapping[str, Classification]:
        return self._table

    def categorize(self, operation: str | None) -> Classification:
        # Exact table entry first, then ordered substring rules, then the default; never raises.
        if not operation:
            return self._default
        name = str(operation)
        exact = self._table.get(name)
        if exact is not None:
            return exact
        lowered = name.lower()
        for needles, category, severity in self._rules:
            if any(needle in lowered for needle in needles):
                return Classification(category=category, severity=severity)
        return self._default

    def with_overrides(self, overrides: Mapping[str, Classification]) -> "Categorizer":
        # Return a new categorizer whose table has the overrides applied on top.
        merged = dict(self._table)
        merged.update(overrides)
        return Categorizer(table=merged, rules=self._rules, default=self._default)


def parse_operation_catalog(payload: Mapping[str, Any]) -> dict[str, Classification]:
    # Validate an operation catalog document: {"Operation": {"category": ..., "severity": ...}}.
    entries: dict[str, Classification] = {}
    for operation, entry in payload.items():
        if not isinstance(entry, Mapping):
            raise ConfigError(f"catalog entry for {operation!r} must be an object")
        category = entry.get("category")
        severity = entry.get("severity")
        if not isinstance(category, str) or not is_known_category(category):
            raise ConfigError(f"catalog entry for {operation!r} has unknown category {category!r}")
        if severity not in SEVERITIES:
            raise ConfigError(f"catalog entry for {operation!r} has invalid severity {severity!r}")
        entries[str(operation)] = Classification(category=category, severity=severity)
    return entries


def load_operation_catalog(path: str | Path) -> dict[str, Classification]:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot read operation catalog {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ConfigError(f"operation catalog {path} must be a JSON object")
    return parse_operation_catalog(payload)


def build_categorizer(catalog_path: str | Path | None = None) -> Categorizer:
    # Built-in table plus optional operator-maintained catalog entries.
    categorizer = Categorizer()
    if catalog_path:
        overrides = load_operation_catalog(catalog_path)
        logger.info("operation_catalog_loaded path=%s entries=%s", catalog_path, len(overrides))
        categorizer = categorizer.with_overrides(overrides)
    return categorizer


_default_categorizer = Categorizer()


def categorize(operation: str | None) -> Classification:
    return _default_categorizer.categorize(operation)


def known_operations(categorizer: Categorizer | None = None) -> Iterable[str]:
    return sorted((categorizer or _default_categorizer).table)
