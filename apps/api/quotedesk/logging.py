"""JSON logging for the API and the worker.

Records carry the request correlation id; structured extras are emitted under
``fields`` only when they are in ``STRUCTURED_FIELDS``, so arbitrary ``extra``
keys never leak into the log stream.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from quotedesk.context import get_correlation_id


STRUCTURED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "quotation_id",
        "quotation_number",
        "from_status",
        "to_status",
        "thread_status",
        "performed_by",
        "notification_type",
        "recipient_type",
        "message_id",
        "version",
        "count",
        "operation",
        "event_name",
        "service",
        "error",
    }
)
MAX_ERROR_LENGTH = 500

_base_factory = logging.getLogRecordFactory()


def _stamp_correlation_id(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _correlated_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp_correlation_id(_base_factory(*args, **kwargs))


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: getattr(record, key) for key in STRUCTURED_FIELDS if key in record.__dict__}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging() -> None:
    root = logging.getLogger()
    if getattr(root, "_quotedesk_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(_stamp_correlation_id)

    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
    logging.setLogRecordFactory(_correlated_record)
    root._quotedesk_configured = True  # type: ignore[attr-defined]
