from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from crmsync.context import get_correlation_id, get_sync_event


# Extras that may reach the log stream. Payloads and response bodies never do.
FIELD_WHITELIST = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "event_type",
        "event",
        "success",
        "user_id",
        "contact_id",
        "log_id",
        "actor_type",
        "actor_id",
        "outcome",
        "reason",
        "done",
        "total",
        "error",
    }
)
ERROR_MAX_CHARS = 500

_default_record_factory = logging.getLogRecordFactory()


def _context_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if not getattr(record, "sync_event", None):
        record.sync_event = get_sync_event()
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``logger``, ``msg``, context ids and ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in record.__dict__.items() if key in FIELD_WHITELIST}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:ERROR_MAX_CHARS]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        sync_event = getattr(record, "sync_event", None)
        if sync_event:
            payload["sync_event"] = sync_event
        return json.dumps(payload, default=str)


def configure_logging(level_name: str = "INFO") -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crmsync_configured", False):
        return

    level = getattr(logging, level_name.upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_context_record_factory)
    root_logger.addHandler(handler)
    # httpx logs every outbound call at INFO; ghl.request already covers them.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    root_logger._crmsync_configured = True  # type: ignore[attr-defined]
