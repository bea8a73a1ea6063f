"""
Structured JSON logging utilities.

Single-line JSON records for hosted log collectors, plus a logger adapter
that stamps every record with the table it concerns.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "taskName", "message",
    }
)


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp (UTC), level, logger, message,
    the formatted exception if any, and every ``extra`` field such as the
    ``table_id`` stamped by TableLoggerAdapter.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                try:
                    json.dumps(value)
                    log_obj[key] = value
                except (TypeError, ValueError):
                    log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = None,
) -> logging.Logger:
    """
    Send a logger's records to stdout as JSON lines.

    DashboardSync calls this for the ``dashboard_sync`` logger when the
    configured log format is ``json``. Calling it again replaces the handler.

    Args:
        level: Level to set on the logger
        logger_name: Logger to configure (root logger when omitted)

    Returns:
        The configured logger
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger = logging.getLogger(logger_name)
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """Logger under the ``dashboard_sync`` namespace, e.g. ``dashboard_sync.runtime``."""
    return logging.getLogger(f"dashboard_sync.{name}")


class TableLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds the table id to every log record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        table_id = self.extra.get("table_id") if self.extra else None
        if table_id:
            msg = f"[{table_id}] {msg}"
        return msg, kwargs
