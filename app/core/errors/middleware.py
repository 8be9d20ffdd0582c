"""
FastAPI exception handler for PaymentEngineError.

The response carries only registry data (code, title, safe message,
remediation) plus the request id; ``exc.detail`` and ``exc.context`` go to
the log. Unregistered codes are answered with the NM-SYS-001 entry.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import PaymentEngineError
from app.core.errors.registry import error_registry
from app.core.structured_logging import request_id_var

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying a provider outage
PROVIDER_RETRY_AFTER = 5


async def payment_engine_error_handler(request: Request, exc: PaymentEngineError) -> JSONResponse:
    """Convert PaymentEngineError into a structured JSON response."""
    entry = error_registry.resolve(exc.code)
    if entry.code != exc.code:
        logger.error("Unregistered error code %s: %s", exc.code, exc.detail)

    logger.log(
        entry.log_level,
        entry.title,
        extra={
            "error.code": exc.code,
            "error.kind": type(exc).__name__,
            "error.detail": exc.detail,
            "error.retryable": entry.retryable,
            "http.path": request.url.path,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )

    headers = {}
    if entry.retryable and entry.http_status == 503:
        headers["Retry-After"] = str(PROVIDER_RETRY_AFTER)

    return JSONResponse(
        status_code=entry.http_status,
        headers=headers,
        content={
            "error": {
                "code": entry.code,
                "title": entry.title,
                "message": entry.safe_message,
                "retryable": entry.retryable,
                "user_action_required": entry.user_action_required,
                "remediation": entry.remediation,
                "request_id": request_id_var.get(None),
            }
        },
    )
