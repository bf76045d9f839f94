"""
Structured logging configuration.

Two output formats, picked by LOG_FORMAT (``json`` or ``readable``):

- readable: one colored line per record, sync records tagged
  ``[jira job 3f2a…]`` so interleaved worker threads stay legible
- json: one object per line for log aggregation

Default is readable under DEBUG or TESTING and json otherwise. LOG_LEVEL
sets the level (DEBUG in development, INFO elsewhere).

Sync code logs with ``extra={"job_id": ..., "source_type": ...}``;
request timing adds method/path/status/duration_ms/request_id.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Record attributes copied into JSON output when present
CONTEXT_FIELDS = (
    "job_id",
    "source_type",
    "external_key",
    "progress",
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

_NOISY_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")


def _context(record: logging.LogRecord) -> dict:
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            **_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output for a terminal."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _tag(record: logging.LogRecord) -> str:
        source = getattr(record, "source_type", None)
        job_id = getattr(record, "job_id", None)
        if job_id:
            return f" [{source or 'sync'} job {str(job_id)[:8]}]"
        if source:
            return f" [{source}]"
        return ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{color}{clock} {record.levelname:<7}{self.RESET} "
            f"{record.name}{self._tag(record)}: {record.getMessage()}"
        )
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for ``app``."""
    verbose = app.config.get("DEBUG", False) or app.config.get("TESTING", False)
    fmt = os.getenv("LOG_FORMAT", "readable" if verbose else "json").lower()
    level_name = os.getenv("LOG_LEVEL", "DEBUG" if app.config.get("DEBUG") else "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ReadableFormatter())
    handler.setLevel(level)

    # Replaced, not appended: create_app runs more than once per process in tests
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING"):
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
