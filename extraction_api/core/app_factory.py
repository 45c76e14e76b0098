"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers,
lifespan) to improve testability.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from extraction_api.api.routes import extract_router, health_router
from extraction_api.core.config import settings
from extraction_api.core.exception_handlers import setup_exception_handlers
from extraction_api.core.logging import configure_logging
from extraction_api.core.middleware import request_id_middleware
from extraction_api.core.openapi import apply_openapi_customizations
from extraction_api.core.rate_limit import shutdown_rate_limiters

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Release limiter connections when the server stops."""
    yield
    await shutdown_rate_limiters()
    logger.info("app.shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="AI Fashion Extraction API",
        description=(
            "Extracts structured attributes (color, size, fit, ...) from fashion "
            "product images. Requests are rate limited per client address with a "
            "shared Redis window when configured and an in-process window otherwise."
        ),
        version="2.0.0",
        lifespan=lifespan,
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(extract_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
