from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from advisor_crm.context import get_correlation_id


# extra= keys that are copied into the JSON "fields" object
LOG_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "opportunity_id",
        "funnel_id",
        "from_stage_id",
        "to_stage_id",
        "gated_field",
        "event_name",
        "error",
    }
)
TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s"
MAX_ERROR_LENGTH = 500

_previous_factory = logging.getLogRecordFactory()


def _with_correlation_id(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _previous_factory(*args, **kwargs)
    if getattr(record, "correlation_id", None) is None:
        record.correlation_id = get_correlation_id()
    return record


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        return True


def _jsonable(value: Any) -> Any:
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        fields = {key: _jsonable(getattr(record, key)) for key in LOG_FIELDS if hasattr(record, key)}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        if self.service:
            payload["service"] = self.service
        return json.dumps(payload, default=str)


def configure_logging(service: str | None = None) -> None:
    """Install one stdout handler on the root logger.

    ``LOG_LEVEL`` picks the level and ``LOG_FORMAT=text`` swaps the JSON
    formatter for a single-line human format. Calling it again is a no-op.
    """
    root_logger = logging.getLogger()
    if getattr(root_logger, "_advisor_crm_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    if os.getenv("LOG_FORMAT", "json").lower() == "text":
        formatter: logging.Formatter = logging.Formatter(TEXT_FORMAT)
    else:
        formatter = JsonLogFormatter(service=service)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_with_correlation_id)
    # RequestLoggingMiddleware already emits one line per request
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    root_logger._advisor_crm_configured = True  # type: ignore[attr-defined]
