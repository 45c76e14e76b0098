from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from extraction_api.core.config import settings
from extraction_api.core.rate_limit import HEALTH, check_best_effort
from extraction_api.schemas.service import HealthEnvironment, HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint.

    Counted against the ``HEALTH`` rule but never rejected, so load balancers
    and monitors always get an answer.

    Returns:
        HealthResponse: Status, timestamp and configured facilities.
    """

    await check_best_effort(request, HEALTH)

    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        environment=HealthEnvironment(
            app_env=settings.app_env,
            redis_url=bool(settings.redis.url),
        ),
    )
