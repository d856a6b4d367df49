"""Logging setup shared by the API process and the scan scheduler."""

from __future__ import annotations

import logging
import time
from logging.config import dictConfig
from typing import Any, Dict, Iterable, Mapping, Sequence

from settings import get_settings

CONTEXT_KEYS = (
    "source",
    "device_id",
    "date_dir",
    "file_path",
    "row_number",
    "reason",
    "point_count",
    "file_count",
    "processing_ms",
    "duration",
)

# client libraries that log every request at INFO
_QUIET_LOGGERS = {
    "influxdb_client": "WARNING",
    "urllib3": "WARNING",
    "httpx": "WARNING",
}

_configured = False


class ContextualFormatter(logging.Formatter):
    """Appends ``key=value`` pairs for known ``extra=`` keys, timestamps in UTC."""

    converter = time.gmtime

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        context_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._context_keys: Sequence[str] = tuple(context_keys or CONTEXT_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in self._context_keys
            if getattr(record, key, None) is not None
        ]
        if not context:
            return message
        return f"{message} | {' '.join(context)}"


def _logger_levels(overrides: Mapping[str, str] | None) -> Dict[str, Dict[str, Any]]:
    levels = dict(_QUIET_LOGGERS)
    levels.update(overrides or {})
    return {name: {"level": level} for name, level in levels.items()}


def configure_logging(
    level: str | int | None = None,
    logger_levels: Mapping[str, str] | None = None,
) -> None:
    """Install the contextual formatter on the root logger once per process."""
    global _configured
    if _configured:
        return

    log_level = level if level is not None else get_settings().log_level

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": "logging_config.ContextualFormatter",
                    "fmt": "%(asctime)sZ | %(levelname)s | %(threadName)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "style": "%",
                    "context_keys": list(CONTEXT_KEYS),
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "contextual",
                }
            },
            "loggers": _logger_levels(logger_levels),
            "root": {"handlers": ["default"], "level": log_level},
        }
    )

    _configured = True
