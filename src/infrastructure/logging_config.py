"""Logging configuration.

Human-readable output for interactive use, one JSON object per line for
log shippers. Audit-pipeline events carry their identifiers (transaction id,
table, record count) in `extra_fields` so they stay queryable.

Security Impact:
    - Snapshots and credentials are never passed to the logger by the
      pipeline; only identifiers and counts are logged
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class StructuredFormatter(logging.Formatter):
    """JSON formatter: timestamp, level, logger, message, source location,
    exception text and any `extra_fields` attached to the record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_data.update(extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger.

    Parameters:
        use_json: Emit StructuredFormatter JSON lines
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if use_json:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
    root_logger.addHandler(handler)

    # Driver chatter
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
