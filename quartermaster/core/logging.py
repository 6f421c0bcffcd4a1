from __future__ import annotations

import logging

from quartermaster.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; uvicorn/pytest handlers installed earlier are kept.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
    # SQL echo is noisy at INFO; keep it opt-in through the engine logger.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
