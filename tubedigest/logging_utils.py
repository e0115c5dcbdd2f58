"""Structured logging for TubeDigest.

Domain code reports through :func:`log_event` with a dotted event name
(``ledger.reserved``, ``pipeline.failed``) and keyword fields. The console shows
one readable ``event key=value`` line; the rotating file gets one JSON object per
record with the fields as top-level keys.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Any, Mapping

from .config import AppConfig

SERVICE_NAME = "tubedigest"
CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
# provider SDKs and the scheduler executor log every request or job run at INFO
QUIET_LOGGERS = ("httpx", "openai", "googleapiclient.discovery_cache", "apscheduler.executors.default")

_RESERVED_KEYS = frozenset({"ts", "level", "logger", "service", "environment", "event", "message", "exc_info"})


def render_fields(fields: Mapping[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in fields.items())


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``log_event`` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": SERVICE_NAME,
            "environment": getattr(record, "environment", "unknown"),
            "event": getattr(record, "event", record.funcName),
            "message": record.getMessage(),
        }
        for key, value in (getattr(record, "extra_fields", None) or {}).items():
            payload[f"field_{key}" if key in _RESERVED_KEYS else key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextFilter(logging.Filter):
    """Stamps the deployment environment on every record and names plain records by function."""

    def __init__(self, environment: str) -> None:
        super().__init__()
        self._environment = environment

    def filter(self, record: logging.LogRecord) -> bool:
        record.environment = self._environment
        if not getattr(record, "event", None):
            record.event = record.funcName
        return True


def log_event(log: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Log a named event; ``fields`` reach :class:`JsonFormatter` untouched."""
    if not log.isEnabledFor(level):
        return
    message = f"{event} {render_fields(fields)}".rstrip()
    log.log(level, message, extra={"event": event, "extra_fields": fields})


def _file_handler(config: AppConfig) -> logging.Handler:
    handler = TimedRotatingFileHandler(
        filename=str(config.log_path),
        when="midnight",
        backupCount=14,
        utc=True,
        encoding="utf-8",
    )
    handler.setFormatter(JsonFormatter())
    return handler


def configure_logging(config: AppConfig) -> None:
    """Replace the root handlers with a console handler and a JSON rotating file."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if config.environment == "development" else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    context_filter = ContextFilter(config.environment)
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    for handler in (console, _file_handler(config)):
        handler.addFilter(context_filter)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
