"""
Request correlation for the payments API.

Each request gets a request_id (and an upstream correlation_id when the
caller sends one). Both are set in contextvars for the structlog chain and
echoed on the response, so a provider webhook delivery can be followed
through billing and marketplace logs.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.structured_logging import correlation_id_var, request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"
CORRELATION_ID_HEADER = "x-correlation-id"


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Bind request/correlation ids and log one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or request_id

        tokens = (request_id_var.set(request_id), correlation_id_var.set(correlation_id))
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            self._log(request, status_code, (time.perf_counter() - started) * 1000)
            request_id_var.reset(tokens[0])
            correlation_id_var.reset(tokens[1])

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response

    @staticmethod
    def _log(request: Request, status_code: int, duration_ms: float) -> None:
        path = request.url.path
        extra = {
            "http.method": request.method,
            "http.path": path,
            "http.status_code": status_code,
            "duration_ms": round(duration_ms, 2),
        }
        if path.endswith("/webhook"):
            extra["webhook.provider"] = (
                request.query_params.get("provider") or request.headers.get("x-payment-provider")
            )
        level = logging.DEBUG if path.startswith("/api/health") and status_code < 400 else logging.INFO
        logger.log(level, "request_completed", extra=extra)
