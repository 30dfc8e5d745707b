"""
Log output for the tracker: one stderr handler on the root logger.

Services attach structured context with ``extra=`` (exception ids, severity,
status changes, sweep results). Both formatters render every such attribute;
nothing needs to be registered here when a service adds a new key.

    text  one line per record, context appended as key=value pairs
    json  one object per line, context nested under "context"

LOG_FORMAT selects the formatter; when empty, production gets json and every
other environment gets text. LOG_LEVEL defaults to INFO in production and
DEBUG elsewhere.
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Attributes every LogRecord carries; anything else arrived through extra=
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

_NOISY_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")


def record_context(record: logging.LogRecord) -> dict:
    """Return the extra= attributes of a record, in the order they were set."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        context = record_context(record)
        if context:
            entry["context"] = context
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Single-line text output, colored by level when writing to a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }

    def __init__(self, use_color: bool = False) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:<8}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}\033[0m"
        line = f"{_record_time(record):%H:%M:%S} {level} {record.name}: {record.getMessage()}"
        pairs = " ".join(f"{k}={v}" for k, v in record_context(record).items())
        if pairs:
            line = f"{line} | {pairs}"
        if record.exc_info and record.exc_info[0] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def build_formatter(fmt: str, *, stream=None) -> logging.Formatter:
    """Return the formatter named by fmt ("json" or "text")."""
    if fmt == "json":
        return JSONFormatter()
    if fmt == "text":
        isatty = getattr(stream, "isatty", None)
        return ReadableFormatter(use_color=bool(isatty and isatty()))
    raise ValueError(f"Unknown LOG_FORMAT '{fmt}' (expected 'json' or 'text')")


def configure_logging(app):
    """Install the tracker's handler on the root logger from app config."""
    is_prod = not app.config.get("DEBUG") and not app.config.get("TESTING")

    fmt = (app.config.get("LOG_FORMAT") or ("json" if is_prod else "text")).lower()
    level_name = (app.config.get("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(fmt, stream=sys.stderr))

    root = logging.getLogger()
    # create_app runs once per test session and per CLI call; never stack handlers
    root.handlers = [handler]
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    app.logger.debug("Logging configured", extra={"log_level": level_name, "log_format": fmt})
