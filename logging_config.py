"""Logging configuration helpers for the assessment portal."""

from __future__ import annotations

import logging
from logging import Logger

from config import settings


def configure_logging(level: str | None = None) -> Logger:
    """Configure basic logging for the service and return the portal logger."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return logging.getLogger("portal")
