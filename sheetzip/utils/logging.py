"""Logging bootstrap for the service."""

from __future__ import annotations

import logging
from typing import Optional

_LOGGER_NAME = "sheetzip"
_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a single stream handler to the package logger and return it.

    Repeated calls only adjust the level, so modules may call this at import
    time without duplicating handlers.
    """

    logger = logging.getLogger(_LOGGER_NAME)
    if not any(getattr(handler, "_sheetzip", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._sheetzip = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    if level:
        logger.setLevel(level.upper())
    elif logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)
    return logger


__all__ = ["configure_logging"]
