"""Per-client rate limiter with a shared store and a local fallback.

One ``RateLimiter`` is created per rule (e.g. "extraction, 10 req/min") and
reused for every request under that rule. Requests are counted per
``(identifier, client IP)`` key.

Backend selection happens per call:
- Distributed window (Redis) while the store is configured and healthy.
- Local window otherwise, or whenever the distributed call fails. After a
  failure the store is skipped for ``reconnect_cooldown_seconds`` before it
  is tried again.

Only ``RateLimitExceededError`` ever reaches the caller; store failures are
logged and absorbed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from fastapi import Request
from redis.asyncio import Redis
from redis.exceptions import RedisError

from extraction_api.adapters.rate_limit.base import RateLimitConfig, RateLimitInfo
from extraction_api.adapters.rate_limit.in_memory import LocalWindow
from extraction_api.adapters.rate_limit.redis_window import DistributedWindow, create_redis_client
from extraction_api.core.config import RedisSettings, settings
from extraction_api.core.logging import hash_for_log, mask_url

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"
KEY_PREFIX = "rate-limit"

_STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def _now_ms() -> int:
    return int(time.time() * 1000)


def resolve_client_ip(request: Request) -> str:
    """Best-effort client address from proxy headers.

    Uses the first hop of ``X-Forwarded-For``, then ``X-Real-IP``, then
    ``"unknown"``. The socket peer is deliberately ignored: behind a proxy it
    is the proxy itself.
    """

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = (request.headers.get("x-real-ip") or "").strip()
    return real_ip or UNKNOWN_CLIENT


def build_rate_limit_key(request: Request, identifier: str) -> str:
    """Composite key ``rate-limit:{identifier}:{client ip}``."""

    return f"{KEY_PREFIX}:{identifier}:{resolve_client_ip(request)}"


class RateLimiter:
    """Sliding-window limiter for a single rule.

    Args:
        config: Rule configuration.
        redis_client: Explicit client for the distributed window. When omitted
            a client is created from ``redis_settings.url`` if one is set.
        redis_settings: Store settings; defaults to the process settings.
        clock: Time source returning epoch milliseconds.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        redis_client: Redis | None = None,
        redis_settings: RedisSettings | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        store_settings = redis_settings or settings.redis

        self.config = config
        self._clock = clock
        self._local = LocalWindow(config)
        self._distributed: DistributedWindow | None = None
        self._cooldown_ms = int(store_settings.reconnect_cooldown_seconds * 1000)
        self._store_retry_at = 0

        if redis_client is None and store_settings.url:
            try:
                redis_client = create_redis_client(store_settings)
            except (ValueError, RedisError) as exc:
                logger.error(
                    "rate_limit.store_init_failed",
                    extra={
                        "store": mask_url(store_settings.url),
                        "error_type": type(exc).__name__,
                        "error_msg": str(exc),
                    },
                )

        if redis_client is not None:
            self._distributed = DistributedWindow(config, redis_client)

    @property
    def local_window(self) -> LocalWindow:
        return self._local

    @property
    def has_store(self) -> bool:
        return self._distributed is not None

    @property
    def using_distributed_store(self) -> bool:
        """Whether the next check will go to the shared store."""
        return self._store_selected(self._clock())

    def _store_selected(self, now: int) -> bool:
        return self._distributed is not None and now >= self._store_retry_at

    async def check(self, request: Request, identifier: str) -> RateLimitInfo:
        """Count one request under ``identifier`` for the caller's address.

        Args:
            request: Inbound request, used only for its proxy headers.
            identifier: Name of the rule being enforced (e.g. ``EXTRACTION``).

        Returns:
            RateLimitInfo with the remaining budget.

        Raises:
            RateLimitExceededError: When the caller is over the limit.
            ValueError: If identifier is empty.
        """

        if not identifier:
            raise ValueError("identifier must be a non-empty string")

        key = build_rate_limit_key(request, identifier)
        now = self._clock()

        if self._store_selected(now):
            try:
                return await self._distributed.hit(key, now)
            except _STORE_ERRORS as exc:
                self._store_retry_at = now + self._cooldown_ms
                logger.warning(
                    "rate_limit.store_unavailable",
                    extra={
                        "identifier": identifier,
                        "key_hash": hash_for_log(key),
                        "error_type": type(exc).__name__,
                        "error_msg": str(exc),
                        "cooldown_ms": self._cooldown_ms,
                    },
                )

        return await self._local.hit(key, now)

    async def disconnect(self) -> None:
        """Close the store connection (if any) and forget local counts."""

        distributed, self._distributed = self._distributed, None
        if distributed is not None:
            try:
                await distributed.close()
            except _STORE_ERRORS as exc:
                logger.warning(
                    "rate_limit.store_close_failed",
                    extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
                )
        await self._local.close()


def rate_limit(config: RateLimitConfig, **kwargs) -> RateLimiter:
    """Create a limiter for one rule. See :class:`RateLimiter` for kwargs."""

    return RateLimiter(config, **kwargs)
