from __future__ import annotations

import logging
import sys

from limitledger.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Install a single stream handler so repeated app factories do not duplicate output.
    settings = get_settings()
    root = logging.getLogger()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)
    for handler in root.handlers:
        if getattr(handler, "_limitledger", False):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._limitledger = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # SQLAlchemy engine logs are noisy at INFO; keep them at WARNING unless debugging.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
