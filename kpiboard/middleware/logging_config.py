"""
Logging setup for the KPI board.

Services log with ``extra={...}`` context (kpi_id, user_id, viewed_user_id,
deliverable_id, discrepancy_id, action). Request timing adds method, path,
status, duration_ms and request_id. Both formatters render exactly those
fields:

    LOG_FORMAT=json   one JSON object per line
    LOG_FORMAT=text   "12:04:31 INFO  kpiboard.services.kpi_service: KPI patched kpi=7 user=3 action=kpi:patch"
"""

import json
import logging
import sys
from datetime import datetime, timezone

# extra= key -> short label used by the text formatter
CONTEXT_FIELDS = {
    "request_id": "req",
    "method": "method",
    "path": "path",
    "status": "status",
    "duration_ms": "ms",
    "user_id": "user",
    "kpi_id": "kpi",
    "viewed_user_id": "viewed",
    "deliverable_id": "deliverable",
    "discrepancy_id": "discrepancy",
    "action": "action",
}

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "flask_limiter")


def record_context(record: logging.LogRecord) -> dict:
    """The context fields a record carries, in CONTEXT_FIELDS order."""
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **record_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        context = " ".join(
            f"{CONTEXT_FIELDS[key]}={value:.0f}" if key == "duration_ms" else f"{CONTEXT_FIELDS[key]}={value}"
            for key, value in record_context(record).items()
        )
        line = f"{ts} {record.levelname:<5} {record.name}: {record.getMessage()}"
        if context:
            line = f"{line} {context}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


FORMATTERS = {"json": JSONFormatter, "text": TextFormatter}


def configure_logging(app):
    """Install one stderr handler on the root logger from LOG_FORMAT / LOG_LEVEL."""
    fmt = str(app.config.get("LOG_FORMAT", "json")).lower()
    if fmt not in FORMATTERS:
        raise ValueError(f"LOG_FORMAT must be one of {sorted(FORMATTERS)}, got {fmt!r}")
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown LOG_LEVEL {level_name!r}")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(FORMATTERS[fmt]())

    # Replaced, not appended, so repeated create_app() calls don't duplicate lines
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    app.logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    app.logger.debug("Logging configured: level=%s format=%s", level_name, fmt)
