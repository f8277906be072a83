"""Access logging for the ad-spend billing API."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("adspend_api.access")

# Masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset(
    {"authorization", "cookie", "x-admin-token", "stripe-signature"}
)
_MASK: str = "***"

CORRELATION_HEADER: str = "X-Correlation-ID"


def safe_headers(request: Request) -> dict[str, str]:
    """Request headers with credentials and signatures masked."""
    return {
        key: (_MASK if key.lower() in _SENSITIVE_HEADERS else value)
        for key, value in request.headers.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured log record per request.

    The record carries method, path, status and duration, the calling
    customer (``X-Customer-ID``) and a correlation id.  The correlation id
    is taken from the incoming ``X-Correlation-ID`` header when present,
    otherwise generated, and echoed back on the response.  5xx responses log
    at ERROR and 4xx at WARNING.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) or None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "customer_id": request.headers.get("x-customer-id", "anonymous"),
                "headers": safe_headers(request),
            }
            if status_code >= 500:
                level = logging.ERROR
            elif status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(level, "request completed", extra={"request": payload})
