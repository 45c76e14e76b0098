"""Pydantic schemas for service description and health responses."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class RateLimitPolicy(BaseModel):
    """Rate limit applied to an endpoint, per client address."""

    max_requests: int = Field(..., description="Requests allowed per window.")
    interval_seconds: int = Field(..., description="Sliding window length in seconds.")
    block_seconds: int | None = Field(
        default=None,
        description="How long a client stays blocked after exceeding the limit.",
    )


class UploadLimits(BaseModel):
    """Constraints applied to uploaded product images."""

    max_file_size_mb: int = Field(..., description="Maximum upload size in megabytes.")
    allowed_types: List[str] = Field(..., description="Accepted image MIME types.")
    max_dimension_px: int = Field(..., description="Maximum image width/height.")
    min_dimension_px: int = Field(..., description="Minimum image width/height.")


class ExtractServiceInfo(BaseModel):
    """Description of the attribute extraction API."""

    service: str = Field(..., description="Service name.")
    version: str = Field(..., description="API version.")
    accepts: str = Field(..., description="Request content type for extraction.")
    required_fields: List[str] = Field(..., description="Mandatory form fields.")
    limits: UploadLimits
    rate_limit: RateLimitPolicy


class HealthEnvironment(BaseModel):
    """Which optional facilities are configured (never their values)."""

    app_env: str
    redis_url: bool = Field(..., description="Whether a shared rate limit store is configured.")


class HealthResponse(BaseModel):
    """Liveness payload."""

    status: str = Field("ok", description="Always 'ok' while the process serves requests.")
    timestamp: str = Field(..., description="ISO-8601 UTC time of the check.")
    environment: HealthEnvironment
