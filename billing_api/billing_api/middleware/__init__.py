"""Middleware components for the add-on billing API."""

from __future__ import annotations

from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "RequestLoggingMiddleware",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
]
