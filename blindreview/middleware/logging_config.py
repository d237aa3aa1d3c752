"""
Logging setup for the engine.

Services log with ``extra={...}`` to tag a record with the call, proposal
or event it concerns. Outside development those tags become top-level keys
of a one-line JSON record; in development they are appended to a short
readable line.

LOG_LEVEL overrides the level (DEBUG in development, INFO otherwise).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Record attributes promoted to output keys when a log call sets them
ENGINE_TAGS = (
    "request_id",
    "user_id",
    "organization_id",
    "call_id",
    "proposal_id",
    "event_type",
    "method",
    "path",
    "status",
    "duration_ms",
)

# Tags worth showing on a readable line; the rest stay in JSON only
_READABLE_TAGS = ("event_type", "call_id", "proposal_id")

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}


def _tags(record: logging.LogRecord, names=ENGINE_TAGS) -> dict:
    return {name: getattr(record, name) for name in names if getattr(record, name, None) is not None}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_tags(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        color = _LEVEL_COLORS.get(record.levelname, "")
        line = f"{color}{record.levelname[:4]}\033[0m {record.name}: {record.getMessage()}"

        tags = _tags(record, _READABLE_TAGS)
        if tags:
            line += " " + " ".join(f"{k}={v}" for k, v in tags.items())
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger; safe to call per app."""
    testing = app.config.get("TESTING", False)
    json_output = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if json_output else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else ReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)

    for chatty in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(chatty).setLevel(logging.WARNING)

    if not testing:
        app.logger.info("Logging ready (level=%s, json=%s)", level_name, json_output)
