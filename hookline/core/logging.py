from __future__ import annotations

import logging

from hookline.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Idempotent so the API factory and the worker can both call it on startup.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # httpx logs every request at INFO; keep delivery noise out of service logs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
