from __future__ import annotations

from fastapi import APIRouter, Depends

from extraction_api.core.config import settings
from extraction_api.core.rate_limit import EXTRACTION, enforce_rate_limit
from extraction_api.schemas.service import ExtractServiceInfo, RateLimitPolicy, UploadLimits

router = APIRouter(tags=["Extraction"])

SERVICE_NAME = "AI Fashion Extraction API"
SERVICE_VERSION = "2.0.0"


@router.get(
    "/extract",
    response_model=ExtractServiceInfo,
    dependencies=[Depends(enforce_rate_limit(EXTRACTION))],
)
async def describe_extraction() -> ExtractServiceInfo:
    """Describe the extraction API and the limits it enforces.

    Counted against the ``EXTRACTION`` rule; successful responses carry
    ``X-RateLimit-Remaining``, ``X-RateLimit-Reset`` and ``X-RateLimit-Total``.

    Raises:
        RateLimitExceededError: Translated to 429 by the exception handler.
    """

    app = settings.app
    return ExtractServiceInfo(
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        accepts="multipart/form-data",
        required_fields=["file", "categoryId"],
        limits=UploadLimits(
            max_file_size_mb=app.max_upload_size_mb,
            allowed_types=[t.strip() for t in app.allowed_image_types.split(",") if t.strip()],
            max_dimension_px=app.max_image_dimension,
            min_dimension_px=app.min_image_dimension,
        ),
        rate_limit=RateLimitPolicy(
            max_requests=app.extraction_rate_limit_requests,
            interval_seconds=app.extraction_rate_limit_window_seconds,
            block_seconds=app.extraction_rate_limit_block_seconds,
        ),
    )
