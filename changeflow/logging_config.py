"""
Structured logging configuration.

- Development: human-readable colored format
- Production: JSON format (log aggregator compatible)
- Log level: controlled via LOG_LEVEL
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Extra attributes passed via ``logger.info(..., extra={...})`` that the
# JSON formatter promotes to top-level keys.
CONTEXT_KEYS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "organization_id",
    "actor_id",
    "entity_kind",
    "entity_id",
    "notice_id",
    "recipient_id",
    "error_kind",
    "error_code",
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in CONTEXT_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = str(val) if not isinstance(val, (int, float, bool)) else val
        return json.dumps(log_entry, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    """Human-readable colored formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")
        msg = record.getMessage()
        ref = getattr(record, "entity_id", None)
        ref_str = f" [{ref}]" if ref is not None else ""
        base = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}:{ref_str} {msg}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(settings) -> None:
    """
    Install a single stderr handler on the root logger.

    Reads LOG_LEVEL / LOG_FORMAT from the settings object.
    """
    level = getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO)
    formatter = JSONFormatter() if settings.LOG_FORMAT == "json" else ReadableFormatter()

    root = logging.getLogger()
    # Remove existing handlers to prevent duplicates in tests
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("uvicorn.access", "httpx", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    if not settings.TESTING:
        logging.getLogger(__name__).info(
            "Logging configured: level=%s format=%s", settings.LOG_LEVEL, settings.LOG_FORMAT
        )
