"""Global exception handlers for consistent error responses.

Design:
- RateLimitExceededError → 429 with Retry-After guidance
- Other AppError subclasses → 400 (client fault)
- Unexpected Exception → generic 500 (safety net)
- All responses include request_id for distributed tracing
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from extraction_api.core.errors import AppError, RateLimitExceededError
from extraction_api.core.logging import get_request_id
from extraction_api.core.rate_limit import retry_headers

logger = logging.getLogger(__name__)


def _error_body(exc: AppError) -> dict:
    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        error_content["details"] = exc.details
    return {"error": error_content}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    All responses include:
    - error.code: Machine-readable error code
    - error.message: Human-readable message
    - error.request_id: For distributed tracing
    - error.details: Optional structured context

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with status 400.
    """
    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": 400,
            "has_details": bool(exc.details),
        },
    )
    return JSONResponse(status_code=400, content=_error_body(exc))


async def rate_limit_error_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Translate a rate limit violation into HTTP 429.

    The body carries ``details.retry_after`` in milliseconds; the
    ``Retry-After`` header carries the same wait in whole seconds.
    """
    now_ms = int(time.time() * 1000)
    logger.info(
        "rate_limit_error_handled",
        extra={
            "error_code": exc.code,
            "status_code": 429,
            "retry_after_ms": exc.retry_after,
            "request_path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=429,
        content=_error_body(exc),
        headers=retry_headers(exc, now_ms),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic message.
    No stack traces or exception text reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app.

    Starlette resolves handlers by walking the exception's MRO, so the
    rate limit handler wins over the generic AppError one.
    """
    app.exception_handler(RateLimitExceededError)(rate_limit_error_handler)
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
