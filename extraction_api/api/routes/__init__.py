from __future__ import annotations

from extraction_api.api.routes.extract import router as extract_router
from extraction_api.api.routes.health import router as health_router

__all__ = ["extract_router", "health_router"]
