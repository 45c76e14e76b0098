"""Redis-backed sliding-window rate limiter.

Each key is a sorted set of request markers scored by their epoch-ms
timestamp. Trimming, inserting, counting and the first-sight expiry run in
one MULTI/EXEC transaction, so concurrent checks for the same key across
processes never see a read-modify-write gap and a key is never left without
a TTL. ``PEXPIRE ... NX`` needs Redis 7.0 or later.

Store failures are not handled here: they propagate to ``RateLimiter``,
which falls back to its local window. The one exception is the block
extension, which runs after the transaction and is skipped with a warning
if it fails.
"""

from __future__ import annotations

import logging
import random

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from extraction_api.adapters.rate_limit.base import AbstractWindow, RateLimitConfig, RateLimitInfo
from extraction_api.core.config import RedisSettings
from extraction_api.core.errors import RateLimitExceededError
from extraction_api.core.logging import mask_url

logger = logging.getLogger(__name__)


def create_redis_client(redis_settings: RedisSettings) -> Redis:
    """Build an async Redis client with bounded, backed-off retries.

    Connections are opened lazily on the first command, so an unreachable
    server surfaces as a command error rather than here.

    Args:
        redis_settings: Store settings; ``url`` must be set.

    Returns:
        Redis: Configured client.

    Raises:
        ValueError: If the URL is missing or malformed.
    """

    if not redis_settings.url:
        raise ValueError("redis url is not configured")

    retry = Retry(
        ExponentialBackoff(
            cap=redis_settings.backoff_cap_seconds,
            base=redis_settings.backoff_base_seconds,
        ),
        redis_settings.max_retries,
    )
    client = Redis.from_url(
        redis_settings.url,
        decode_responses=True,
        socket_timeout=redis_settings.socket_timeout_seconds,
        socket_connect_timeout=redis_settings.socket_connect_timeout_seconds,
        retry=retry,
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
    )
    logger.info(
        "rate_limit.store_configured",
        extra={
            "store": mask_url(redis_settings.url),
            "max_retries": redis_settings.max_retries,
            "backoff_cap_s": redis_settings.backoff_cap_seconds,
        },
    )
    return client


class DistributedWindow(AbstractWindow):
    """Sliding window shared by every process talking to the same Redis.

    A key's expiry is set to the window length when the key is first seen
    and left alone afterwards. Violations replace it with ``block_duration``
    when configured, so each rejected attempt re-extends the block.

    The expiry is not a sliding one: the whole set expires one interval
    after its first request, taking entries still inside the window with
    it. Counts can therefore run low right after expiry, which errs towards
    admitting requests.
    """

    def __init__(self, config: RateLimitConfig, client: Redis) -> None:
        super().__init__(config)
        self._client: Redis | None = client

    @property
    def closed(self) -> bool:
        return self._client is None

    async def hit(self, key: str, now: int) -> RateLimitInfo:
        if self._client is None:
            raise RuntimeError("distributed window is closed")

        window_start = now - self.config.interval
        # Random suffix keeps members unique for requests in the same millisecond
        member = f"{now}-{random.random()}"

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.pexpire(key, self.config.interval, nx=True)
            pipe.pttl(key)
            _, _, count, _, ttl_ms = await pipe.execute()

        count = int(count or 0)
        ttl_ms = int(ttl_ms if ttl_ms is not None else -1)
        expiry_ms = self.config.interval if ttl_ms < 0 else ttl_ms

        if count > self.config.max_requests:
            if self.config.block_duration:
                expiry_ms = await self._extend_block(key, expiry_ms)
            raise RateLimitExceededError(retry_after=expiry_ms)

        return RateLimitInfo(
            remaining=self.config.max_requests - count,
            reset=now + expiry_ms,
            total=self.config.max_requests,
        )

    async def _extend_block(self, key: str, expiry_ms: int) -> int:
        """Replace the key's expiry with the block; keep ``expiry_ms`` if that fails.

        The request is already recorded by then, so a failure here must not
        reach the fallback window and count it a second time.
        """
        try:
            await self._client.pexpire(key, self.config.block_duration)
        except (RedisError, OSError) as exc:
            logger.warning(
                "rate_limit.block_not_applied",
                extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            return expiry_ms
        return self.config.block_duration

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
