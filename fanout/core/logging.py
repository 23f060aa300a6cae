from __future__ import annotations

import logging

from fanout.core.config import Settings, get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    # Configure the root logger once per process; repeated calls only adjust the level.
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
    # Keep per-request access logs out of the delivery signal.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
