"""Request correlation middleware.

Rate limit decisions and error bodies are logged and returned with the
request id set here.
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from extraction_api.core.config import settings
from extraction_api.core.logging import reset_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    """Reuse or generate the request id and echo it with the request duration.

    The id is read from ``LOG_REQUEST_ID_HEADER`` (default ``X-Request-ID``)
    and a UUID4 is used when it is missing.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    token = set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
    finally:
        reset_request_id(token)

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
