"""W3C trace context propagation.

Reads the incoming ``traceparent`` header (or starts a new trace), stores
``trace_id`` / ``span_id`` in ``contextvars`` so log records emitted while
the auto-replenish job runs carry the id of the cron request that started
it, and returns the trace id in ``X-Trace-ID``.

Header format::

    traceparent: {version}-{trace_id}-{parent_span_id}-{flags}
"""

from __future__ import annotations

import contextvars
import logging
import os
import re

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
_span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("span_id", default="")

_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")


def parse_traceparent(header: str) -> tuple[str, str]:
    """Return ``(trace_id, parent_span_id)``, or empty strings if *header* is invalid."""
    match = _TRACEPARENT_RE.match(header.strip().lower()) if header else None
    if match is None:
        return ("", "")

    version, trace_id, parent_span_id, _flags = match.groups()
    if version == "ff" or trace_id == "0" * 32 or parent_span_id == "0" * 16:
        logger.debug("Rejected traceparent header: %s", header)
        return ("", "")
    return (trace_id, parent_span_id)


class TraceContextMiddleware(BaseHTTPMiddleware):
    """Continue or start a trace and expose it on ``request.state``."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id, _parent = parse_traceparent(request.headers.get("traceparent", ""))
        if not trace_id:
            trace_id = os.urandom(16).hex()
        span_id = os.urandom(8).hex()

        _trace_id_var.set(trace_id)
        _span_id_var.set(span_id)
        request.state.trace_id = trace_id
        request.state.span_id = span_id

        response = await call_next(request)
        response.headers["X-Trace-ID"] = trace_id
        return response


class TraceLoggingFilter(logging.Filter):
    """Inject ``trace_id`` and ``span_id`` into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()  # type: ignore[attr-defined]
        record.span_id = _span_id_var.get()  # type: ignore[attr-defined]
        return True
