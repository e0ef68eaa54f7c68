from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from auditsync.core.config import Settings, get_settings, load_tenants
from auditsync.persistence.store import ActivityStore
from auditsync.services.categorizer import build_categorizer
from auditsync.services.extractor import ActivityExtractor
from auditsync.services.orchestrator import ExtractionOrchestrator


logger = logging.getLogger(__name__)


@dataclass
class ExtractionRuntime:
    store: ActivityStore
    extractor: ActivityExtractor
    orchestrator: ExtractionOrchestrator

    async def close(self) -> None:
        # Close the HTTP client before the engine so no request outlives the store.
        try:
            await self.extractor.aclose()
        finally:
            await self.store.close()


def open_runtime(settings: Settings | None = None, *, redis: Any | None = None) -> ExtractionRuntime:
    # Wire the store, extractor and orchestrator from process configuration.
    settings = settings or get_settings()
    tenants = load_tenants(settings)
    if not tenants:
        logger.warning("no_tenants_configured")
    store = ActivityStore.open(settings=settings)
    extractor = ActivityExtractor(settings=settings, categorizer=build_categorizer(settings.operation_catalog_path))
    orchestrator = ExtractionOrchestrator(store, extractor, tenants, settings=settings, redis=redis)
    logger.info("runtime_opened tenants=%s", ",".join(tenant.id for tenant in tenants))
    return ExtractionRuntime(store=store, extractor=extractor, orchestrator=orchestrator)
