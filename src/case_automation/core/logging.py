"""Logging configuration for the automation engine."""

from __future__ import annotations

import logging
import logging.config
from typing import Any

from .config import LoggingSettings

APP_LOGGER = "case_automation"

# REST clients log every request at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")


def _formatter(structured: bool) -> dict[str, Any]:
    if structured:
        return {
            "format": (
                '{{"ts": "{asctime}", "level": "{levelname}", '
                '"logger": "{name}", "message": "{message}"}}'
            ),
            "style": "{",
        }
    return {"format": "%(asctime)s %(levelname)s [%(name)s] %(message)s"}


def configure_logging(settings: LoggingSettings) -> None:
    """Install a single console handler on the root logger.

    Engine loggers follow ``settings.level``; HTTP client libraries are held at
    WARNING so token refreshes and uploads do not flood the output.
    """
    level = settings.level.upper()
    loggers: dict[str, Any] = {
        name: {"level": "WARNING", "propagate": True} for name in _QUIET_LOGGERS
    }
    loggers[APP_LOGGER] = {"level": level, "propagate": True}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"engine": _formatter(settings.structured)},
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "formatter": "engine",
                    "level": level,
                },
            },
            "loggers": loggers,
            "root": {"handlers": ["stderr"], "level": level},
        }
    )
    logging.getLogger(APP_LOGGER).debug("Logging configured at %s", level)


__all__ = ["APP_LOGGER", "configure_logging"]
