"""Process-wide logging setup and transition log formatting."""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

from hvac_scheduler.utils.config import get_settings


_LOGGER_INITIALIZED = False
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once; later calls are no-ops.

    The scheduler tick thread and request threads share one stdout handler,
    so configuration must happen before the first thread starts logging.
    """

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()

    logging.basicConfig(
        level=resolved_level,
        format=_LOG_FORMAT,
        stream=sys.stdout,
    )
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for the requested module."""
    configure_logging()
    return logging.getLogger(name)


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Emit ``event | key=value | ...`` with fields in call order."""
    if not logger.isEnabledFor(level):
        return
    parts = [event]
    parts.extend(f"{key}={value}" for key, value in fields.items())
    logger.log(level, " | ".join(parts))
