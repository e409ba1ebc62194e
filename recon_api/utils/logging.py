"""Structured JSON logging utilities.

- JSON format for log aggregation
- Includes request_id and notification_key from context variables
- Standard fields: timestamp, level, message, module, func, line
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from recon_api.context import notification_key_var, request_id_var
from recon_api.utils.sanitize import redact_exception, redact_text, redact_value

# LogRecord attributes that are never copied as extra fields
_RESERVED_ATTRS: frozenset[str] = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
})


class JSONFormatter(logging.Formatter):
    """JSON log formatter with request/notification context.

    Fields:
    - timestamp: ISO 8601 UTC
    - level, message, module, func, line
    - request_id: from context variable (if set)
    - notification_key: from context variable (if set); lets one grep follow a
      single gateway notification from ingress to side effect
    - anything passed via ``extra={...}``, sanitized
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": redact_text(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        notification_key = notification_key_var.get()
        if notification_key:
            log_data["notification_key"] = notification_key

        if record.exc_info:
            log_data["exc_info"] = redact_exception(record.exc_info[1])

        # Key-based redaction covers top-level extras too
        extras = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}
        log_data.update(redact_value(extras))

        return json.dumps(log_data, default=str)


def configure_json_logging(log_level: str = "INFO") -> None:
    """Configure root logger with JSON formatter.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
