from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_automation_id, get_correlation_id
from app.core.config import get_settings


_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

# Structured extras we emit from request, queue and runner code.
STRUCTURED_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "job_id",
    "job_type",
    "status",
    "error",
    "automation_id",
    "deal_id",
    "trigger",
    "action_type",
    "delay_ms",
    "event_name",
)
MAX_ERROR_LENGTH = 500

_base_factory = logging.getLogRecordFactory()


def _stamp_correlation_id(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class AutomationContextFilter(logging.Filter):
    """Tags records emitted while an automation runs. Explicit extras win."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "automation_id", None) is None:
            automation_id = get_automation_id()
            if automation_id is not None:
                record.automation_id = automation_id
        return True


def _structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        name: record.__dict__[name]
        for name in STRUCTURED_FIELDS
        if name in record.__dict__ and name not in _STANDARD_ATTRS
    }
    error = fields.get("error")
    if isinstance(error, str) and len(error) > MAX_ERROR_LENGTH:
        fields["error"] = error[:MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; known extras are nested under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = _structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


class ConsoleLogFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _structured_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_pipeline_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(ConsoleLogFormatter() if settings.log_format == "console" else JsonLogFormatter())
    handler.addFilter(AutomationContextFilter())

    logging.setLogRecordFactory(_stamp_correlation_id)
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    root_logger._pipeline_configured = True  # type: ignore[attr-defined]
