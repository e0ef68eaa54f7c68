from __future__ import annotations

import logging

from auditsync.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; entrypoints call this before doing work.
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger().setLevel(resolved)
    # httpx logs every request at INFO, which drowns out per-day extraction lines.
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))
