"""
Structured logging configuration.

- Development / testing: single-line readable format, coloured on a TTY
- Production: one JSON object per line
- LOG_LEVEL and LOG_FORMAT ("json" | "readable") env variables override

Every record emitted while a request is being served carries that
request's ``request_id`` (set by the timing middleware), so workflow
service logs can be joined with the access log line.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes copied into the output when a caller passes them via ``extra``
CONTEXT_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "application_id",
    "officer_id",
    "action",
    "event_type",
)


class RequestContextFilter(logging.Filter):
    """Attach the current request id to records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """JSON lines for the log aggregator."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            **_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: [app=12 action=Submit] message [35ms]``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, *, colour: bool = True) -> None:
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.colour:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        tags = " ".join(
            f"{label}={getattr(record, key)}"
            for key, label in (("application_id", "app"), ("officer_id", "officer"), ("action", "action"))
            if getattr(record, key, None) is not None
        )
        line = f"{ts} {level} {record.name}: "
        if tags:
            line += f"[{tags}] "
        line += record.getMessage()
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger for the Flask app.

    Production (not DEBUG, not TESTING) defaults to INFO + JSON, everything
    else to DEBUG + readable.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = os.getenv("LOG_FORMAT", "json" if is_prod else "readable").lower()

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ReadableFormatter(colour=sys.stderr.isatty()))
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # Repeated create_app() calls in tests must not stack handlers
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
