from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from salesflow.context import get_correlation_id, get_sweep_name


ERROR_FIELD_LIMIT = 500

_REQUEST_FIELDS = ("method", "path", "status_code", "duration_ms")
_SWEEP_FIELDS = ("sweep", "status", "processed", "errors", "error")
_PIPELINE_FIELDS = (
    "opportunity_id",
    "lead_id",
    "booking_id",
    "message_id",
    "invoice_id",
    "from_stage",
    "to_stage",
    "actor_id",
    "owner_id",
    "channel",
    "outcome",
    "event_name",
)
# only these record attributes are emitted; anything else passed via extra= is dropped
LOGGED_FIELDS = _REQUEST_FIELDS + _SWEEP_FIELDS + _PIPELINE_FIELDS


def _attach_context(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if not getattr(record, "sweep", None):
        sweep = get_sweep_name()
        if sweep:
            record.sweep = sweep


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _attach_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _attach_context(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {name: getattr(record, name) for name in LOGGED_FIELDS if getattr(record, name, None) is not None}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:ERROR_FIELD_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_salesflow_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._salesflow_configured = True  # type: ignore[attr-defined]
