"""Rate limiting dependencies for FastAPI routes.

This module wires the rate limiting adapter into the HTTP layer.

Design goals:
- One limiter per named rule, built from settings and shared process-wide.
- Routes depend on ``enforce_rate_limit(rule)`` only.
- Violations propagate as ``RateLimitExceededError``; the exception handler
  turns them into 429 responses.

Rules:
- ``EXTRACTION``: extraction API, 10 requests/min per client, 2 min block.
- ``HEALTH``: health checks, 20 requests per 10 s, enforced best-effort.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from functools import lru_cache
from typing import Awaitable, Callable

from fastapi import Request, Response

from extraction_api.adapters.rate_limit import RateLimitConfig, RateLimitInfo, RateLimiter, rate_limit
from extraction_api.adapters.rate_limit.limiter import build_rate_limit_key
from extraction_api.core.config import settings
from extraction_api.core.errors import RateLimitExceededError
from extraction_api.core.logging import hash_for_log

logger = logging.getLogger(__name__)

EXTRACTION = "EXTRACTION"
HEALTH = "HEALTH"

_limiters: dict[str, RateLimiter] = {}
_retired: list[RateLimiter] = []
_closing: set[asyncio.Task] = set()


def _rule_settings() -> tuple:
    app = settings.app
    return (
        app.extraction_rate_limit_window_seconds,
        app.extraction_rate_limit_requests,
        app.extraction_rate_limit_block_seconds,
        app.extraction_rate_limit_max_store_size,
        app.health_rate_limit_window_seconds,
        app.health_rate_limit_requests,
    )


@lru_cache(maxsize=8)
def _configs_for(rule_settings: tuple) -> dict[str, RateLimitConfig]:
    (
        extraction_window,
        extraction_requests,
        block_seconds,
        max_store_size,
        health_window,
        health_requests,
    ) = rule_settings
    return {
        EXTRACTION: RateLimitConfig(
            interval=extraction_window * 1000,
            max_requests=extraction_requests,
            block_duration=block_seconds * 1000 if block_seconds else None,
            max_store_size=max_store_size,
        ),
        HEALTH: RateLimitConfig(
            interval=health_window * 1000,
            max_requests=health_requests,
        ),
    }


def build_rule_configs() -> dict[str, RateLimitConfig]:
    """Configuration of every named rule, built once per settings snapshot."""

    return _configs_for(_rule_settings())


def _retire(limiter: RateLimiter) -> None:
    """Release a replaced limiter without waiting for shutdown."""

    if not limiter.has_store:
        limiter.local_window.clear()
        return

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        _retired.append(limiter)
        return

    task = loop.create_task(limiter.disconnect())
    _closing.add(task)
    task.add_done_callback(_closing.discard)


def get_rate_limiter(rule: str) -> RateLimiter:
    """Return the process-wide limiter for ``rule``.

    The instance is cached in-module to preserve counts across requests.
    If the rule's configuration changes (primarily in tests), the limiter is
    rebuilt and the old one is released straight away.

    Raises:
        ValueError: If the rule is unknown.
    """

    configs = build_rule_configs()
    if rule not in configs:
        raise ValueError(f"unknown rate limit rule: {rule}")

    config = configs[rule]
    limiter = _limiters.get(rule)
    if limiter is None or limiter.config != config:
        if limiter is not None:
            _retire(limiter)
        limiter = rate_limit(config)
        _limiters[rule] = limiter
        logger.info(
            "rate_limit.rule_configured",
            extra={
                "rule": rule,
                "interval_ms": config.interval,
                "max_requests": config.max_requests,
                "block_ms": config.block_duration,
                "distributed": limiter.using_distributed_store,
            },
        )
    return limiter


async def shutdown_rate_limiters() -> None:
    """Disconnect every limiter created by this module."""

    limiters = [*_limiters.values(), *_retired]
    _limiters.clear()
    _retired.clear()
    for limiter in limiters:
        await limiter.disconnect()

    loop = asyncio.get_running_loop()
    pending = [task for task in _closing if task.get_loop() is loop]
    if pending:
        await asyncio.gather(*pending)


def _iso_from_ms(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


def rate_limit_headers(info: RateLimitInfo) -> dict[str, str]:
    """Response headers describing the remaining budget."""

    return {
        "X-RateLimit-Remaining": str(info.remaining),
        "X-RateLimit-Reset": _iso_from_ms(info.reset),
        "X-RateLimit-Total": str(info.total),
    }


def retry_headers(exc: RateLimitExceededError, now_ms: int) -> dict[str, str]:
    """Headers for a 429 response: ``Retry-After`` in whole seconds, rounded up."""

    headers = {"Retry-After": str(math.ceil(exc.retry_after / 1000))}
    if settings.app.rate_limit_include_headers:
        headers["X-RateLimit-Reset"] = _iso_from_ms(now_ms + exc.retry_after)
    return headers


def enforce_rate_limit(rule: str) -> Callable[[Request, Response], Awaitable[RateLimitInfo | None]]:
    """Build a FastAPI dependency enforcing ``rule``.

    When enabled, counts one request for the caller. On success the
    ``RateLimitInfo`` is stored on ``request.state.rate_limit`` and the
    ``X-RateLimit-*`` headers are added to the response.

    Raises:
        RateLimitExceededError: Propagated to the exception handler (HTTP 429).
    """

    async def dependency(request: Request, response: Response) -> RateLimitInfo | None:
        if not settings.app.rate_limit_enabled:
            return None

        limiter = get_rate_limiter(rule)
        key_hash = hash_for_log(build_rate_limit_key(request, rule))

        try:
            info = await limiter.check(request, rule)
        except RateLimitExceededError as exc:
            logger.warning(
                "rate_limit.exceeded",
                extra={
                    "rule": rule,
                    "key_hash": key_hash,
                    "limit": limiter.config.max_requests,
                    "interval_ms": limiter.config.interval,
                    "retry_after_ms": exc.retry_after,
                },
            )
            raise

        logger.info(
            "rate_limit.allowed",
            extra={
                "rule": rule,
                "key_hash": key_hash,
                "limit": info.total,
                "remaining": info.remaining,
            },
        )

        request.state.rate_limit = info
        if settings.app.rate_limit_include_headers:
            response.headers.update(rate_limit_headers(info))
        return info

    return dependency


async def check_best_effort(request: Request, rule: str) -> RateLimitInfo | None:
    """Count a request under ``rule`` without ever rejecting it.

    Used by endpoints that must always answer (health checks).
    """

    if not settings.app.rate_limit_enabled:
        return None

    try:
        return await get_rate_limiter(rule).check(request, rule)
    except RateLimitExceededError as exc:
        logger.info(
            "rate_limit.ignored",
            extra={"rule": rule, "retry_after_ms": exc.retry_after},
        )
        return None
