"""Middleware components for the ad-spend billing API."""

from __future__ import annotations

from adspend_api.middleware.json_formatter import JSONFormatter, configure_structured_logging
from adspend_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
    "configure_structured_logging",
]
