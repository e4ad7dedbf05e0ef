"""Single-line JSON log formatter.

Enabled with ``API_STRUCTURED_LOGGING=true``.  Each record becomes one JSON
object with ``timestamp``, ``level``, ``logger`` and ``message`` plus, when
present, ``trace_id``, the access-log ``request`` dict, the auto-replenish
``summary`` dict, and ``exc_info``.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Structured ``extra=`` keys copied verbatim into the JSON payload.
_STRUCTURED_EXTRAS = ("request", "summary", "workspace_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        trace_id = getattr(record, "trace_id", None)
        if trace_id:
            payload["trace_id"] = trace_id

        for key in _STRUCTURED_EXTRAS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
