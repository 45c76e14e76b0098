"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and os.getenv("TESTING") != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_redis_settings() -> "RedisSettings":
    return RedisSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class RedisSettings(BaseSettings):
    """Shared store used by the distributed rate limit window.

    When ``url`` is unset every limiter runs with its in-process window only.
    """

    url: str | None = Field(
        None,
        description="Redis connection string (REDIS_URL); disables the shared store when empty",
    )
    socket_timeout_seconds: float = Field(
        0.5,
        description="Per-command socket timeout; a timeout counts as a store failure",
        gt=0,
    )
    socket_connect_timeout_seconds: float = Field(
        0.5,
        description="Timeout for establishing a connection",
        gt=0,
    )
    max_retries: int = Field(
        3,
        description="Retries per command on connection/timeout errors",
        ge=0,
    )
    backoff_cap_seconds: float = Field(
        2.0,
        description="Upper bound for the exponential retry backoff",
        gt=0,
    )
    backoff_base_seconds: float = Field(
        0.05,
        description="Base delay of the exponential retry backoff",
        gt=0,
    )
    reconnect_cooldown_seconds: float = Field(
        5.0,
        description="How long a limiter stays on its local window after a store failure",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    rate_limit_enabled: bool = Field(
        True,
        description="Enable per-client rate limiting on guarded endpoints",
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers",
    )

    extraction_rate_limit_requests: int = Field(
        10,
        description="Maximum extraction requests per window (per client IP)",
        ge=1,
    )
    extraction_rate_limit_window_seconds: int = Field(
        60,
        description="Extraction rate limit window size in seconds",
        ge=1,
    )
    extraction_rate_limit_block_seconds: int | None = Field(
        120,
        description="How long a client stays blocked after exceeding the extraction limit",
        ge=1,
    )
    extraction_rate_limit_max_store_size: int = Field(
        1000,
        description="Keys kept by the in-process extraction window before a sweep",
        ge=1,
    )

    health_rate_limit_requests: int = Field(
        20,
        description="Maximum health checks per window (per client IP)",
        ge=1,
    )
    health_rate_limit_window_seconds: int = Field(
        10,
        description="Health check rate limit window size in seconds",
        ge=1,
    )

    max_upload_size_mb: int = Field(
        5,
        description="Maximum image upload size in megabytes",
        ge=1,
    )
    allowed_image_types: str = Field(
        "image/jpeg,image/png,image/webp",
        description="Comma-separated list of accepted image MIME types",
    )
    max_image_dimension: int = Field(
        4096,
        description="Maximum accepted image width/height in pixels",
    )
    min_image_dimension: int = Field(
        50,
        description="Minimum accepted image width/height in pixels",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    redis: RedisSettings = Field(default_factory=_build_redis_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
