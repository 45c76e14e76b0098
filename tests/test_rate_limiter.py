"""Tests for RateLimiter: key resolution, backend selection and fallback."""

import logging
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from extraction_api.adapters.rate_limit import RateLimitConfig, RateLimiter, rate_limit
from extraction_api.adapters.rate_limit.limiter import build_rate_limit_key, resolve_client_ip
from extraction_api.core.config import RedisSettings
from extraction_api.core.errors import RateLimitExceededError

START = 1_700_000_000_000


def _no_store() -> RedisSettings:
    return RedisSettings(url=None, reconnect_cooldown_seconds=5)


def _limiter(clock: Mock, **kwargs) -> RateLimiter:
    config = RateLimitConfig(interval=60_000, max_requests=3)
    kwargs.setdefault("redis_settings", _no_store())
    return RateLimiter(config, clock=clock, **kwargs)


def _failing_client(error: Exception) -> MagicMock:
    pipe = MagicMock()
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    pipe.execute = AsyncMock(side_effect=error)

    client = MagicMock()
    client.pipeline.return_value = pipe
    client.pexpire = AsyncMock()
    client.aclose = AsyncMock()
    return client


def _working_client(count: int = 1, ttl_ms: int = 60_000) -> MagicMock:
    client = _failing_client(RuntimeError("unused"))
    client.pipeline.return_value.execute = AsyncMock(return_value=[0, 1, count, True, ttl_ms])
    return client


class TestClientKey:
    def test_uses_first_forwarded_hop(self, make_request) -> None:
        request = make_request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        assert resolve_client_ip(request) == "203.0.113.7"

    def test_falls_back_to_real_ip(self, make_request) -> None:
        request = make_request({"X-Real-IP": "198.51.100.2"})
        assert resolve_client_ip(request) == "198.51.100.2"

    def test_forwarded_wins_over_real_ip(self, make_request) -> None:
        request = make_request({"X-Forwarded-For": "203.0.113.7", "X-Real-IP": "198.51.100.2"})
        assert resolve_client_ip(request) == "203.0.113.7"

    def test_empty_forwarded_header_is_ignored(self, make_request) -> None:
        request = make_request({"X-Forwarded-For": " , 10.0.0.1", "X-Real-IP": "198.51.100.2"})
        assert resolve_client_ip(request) == "198.51.100.2"

    def test_unknown_without_headers(self, make_request) -> None:
        assert resolve_client_ip(make_request()) == "unknown"

    def test_key_layout(self, make_request) -> None:
        request = make_request({"X-Forwarded-For": "203.0.113.7"})
        assert build_rate_limit_key(request, "EXTRACTION") == "rate-limit:EXTRACTION:203.0.113.7"


class TestLocalOnly:
    @pytest.mark.asyncio
    async def test_remaining_decreases_then_blocks(self, make_request) -> None:
        clock = Mock(return_value=START)
        limiter = _limiter(clock)
        request = make_request({"X-Forwarded-For": "203.0.113.7"})

        remaining = [(await limiter.check(request, "EXTRACTION")).remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check(request, "EXTRACTION")
        assert exc_info.value.retry_after > 0
        assert limiter.using_distributed_store is False

    @pytest.mark.asyncio
    async def test_reopens_after_window(self, make_request) -> None:
        clock = Mock(return_value=START)
        limiter = _limiter(clock)
        request = make_request()

        for _ in range(3):
            await limiter.check(request, "EXTRACTION")
        with pytest.raises(RateLimitExceededError):
            await limiter.check(request, "EXTRACTION")

        clock.return_value = START + 60_001
        info = await limiter.check(request, "EXTRACTION")
        assert info.remaining == 2

    @pytest.mark.asyncio
    async def test_distinct_clients_do_not_interfere(self, make_request) -> None:
        clock = Mock(return_value=START)
        limiter = _limiter(clock)
        client_a = make_request({"X-Forwarded-For": "203.0.113.7"})
        client_b = make_request({"X-Forwarded-For": "203.0.113.8"})

        for _ in range(3):
            await limiter.check(client_a, "EXTRACTION")
        with pytest.raises(RateLimitExceededError):
            await limiter.check(client_a, "EXTRACTION")

        key_b = build_rate_limit_key(client_b, "EXTRACTION")
        assert limiter.local_window.live_count(key_b, START) == 0
        assert (await limiter.check(client_b, "EXTRACTION")).remaining == 2

    @pytest.mark.asyncio
    async def test_distinct_identifiers_do_not_interfere(self, make_request) -> None:
        clock = Mock(return_value=START)
        limiter = _limiter(clock)
        request = make_request()

        for _ in range(3):
            await limiter.check(request, "EXTRACTION")

        assert (await limiter.check(request, "CATEGORY_API")).remaining == 2

    @pytest.mark.asyncio
    async def test_separate_limiters_keep_separate_counts(self, make_request) -> None:
        clock = Mock(return_value=START)
        first = _limiter(clock)
        second = _limiter(clock)
        request = make_request()

        for _ in range(3):
            await first.check(request, "EXTRACTION")

        assert (await second.check(request, "EXTRACTION")).remaining == 2

    @pytest.mark.asyncio
    async def test_rejects_empty_identifier(self, make_request) -> None:
        limiter = _limiter(Mock(return_value=START))

        with pytest.raises(ValueError):
            await limiter.check(make_request(), "")

    def test_invalid_store_url_degrades_to_local(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.ERROR)

        limiter = _limiter(
            Mock(return_value=START),
            redis_settings=RedisSettings(url="not-a-redis-url"),
        )

        assert limiter.using_distributed_store is False
        assert any(r.getMessage() == "rate_limit.store_init_failed" for r in caplog.records)


class TestBackendSelection:
    @pytest.mark.asyncio
    async def test_uses_store_when_healthy(self, make_request) -> None:
        client = _working_client(count=1, ttl_ms=60_000)
        limiter = _limiter(Mock(return_value=START), redis_client=client)

        info = await limiter.check(make_request(), "EXTRACTION")

        assert info.remaining == 2
        assert info.reset == START + 60_000
        client.pipeline.assert_called_once()
        assert limiter.local_window.size == 0

    @pytest.mark.asyncio
    async def test_store_violation_is_not_masked_by_fallback(self, make_request) -> None:
        client = _working_client(count=4, ttl_ms=30_000)
        limiter = _limiter(Mock(return_value=START), redis_client=client)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check(make_request(), "EXTRACTION")

        assert exc_info.value.retry_after == 30_000
        assert limiter.local_window.size == 0

    @pytest.mark.parametrize(
        "error",
        [
            RedisConnectionError("connection refused"),
            RedisTimeoutError("timed out"),
            OSError("network unreachable"),
        ],
    )
    @pytest.mark.asyncio
    async def test_store_failure_falls_back_to_local(
        self, error: Exception, caplog: pytest.LogCaptureFixture, make_request
    ) -> None:
        caplog.set_level(logging.WARNING)
        client = _failing_client(error)
        limiter = _limiter(Mock(return_value=START), redis_client=client)

        info = await limiter.check(make_request(), "EXTRACTION")

        assert info.remaining == 2
        assert limiter.local_window.size == 1
        assert any(r.getMessage() == "rate_limit.store_unavailable" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_fallback_boundary_matches_local_rules(self, make_request) -> None:
        client = _failing_client(RedisConnectionError("down"))
        limiter = _limiter(Mock(return_value=START), redis_client=client)
        request = make_request()

        remaining = [(await limiter.check(request, "EXTRACTION")).remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check(request, "EXTRACTION")
        assert exc_info.value.retry_after == 60_000

    @pytest.mark.asyncio
    async def test_store_skipped_during_cooldown_then_retried(self, make_request) -> None:
        clock = Mock(return_value=START)
        client = _failing_client(RedisConnectionError("down"))
        limiter = _limiter(clock, redis_client=client)
        request = make_request()

        await limiter.check(request, "EXTRACTION")
        assert limiter.using_distributed_store is False

        clock.return_value = START + 1_000
        await limiter.check(request, "EXTRACTION")
        assert client.pipeline.call_count == 1

        client.pipeline.return_value.execute = AsyncMock(return_value=[0, 1, 1, True, 60_000])
        clock.return_value = START + 5_000
        assert limiter.using_distributed_store is True

        info = await limiter.check(request, "EXTRACTION")
        assert client.pipeline.call_count == 2
        assert info.remaining == 2


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_without_store_is_idempotent(self, make_request) -> None:
        limiter = _limiter(Mock(return_value=START))
        await limiter.check(make_request(), "EXTRACTION")

        await limiter.disconnect()
        await limiter.disconnect()

        assert limiter.local_window.size == 0

    @pytest.mark.asyncio
    async def test_disconnect_closes_store_once(self, make_request) -> None:
        client = _working_client()
        limiter = _limiter(Mock(return_value=START), redis_client=client)

        await limiter.disconnect()
        await limiter.disconnect()

        client.aclose.assert_awaited_once()
        assert limiter.has_store is False
        assert limiter.using_distributed_store is False

    @pytest.mark.asyncio
    async def test_close_failure_is_absorbed(self, make_request) -> None:
        client = _working_client()
        client.aclose.side_effect = RedisConnectionError("already gone")
        limiter = _limiter(Mock(return_value=START), redis_client=client)

        await limiter.disconnect()

        assert limiter.using_distributed_store is False

    @pytest.mark.asyncio
    async def test_limiter_keeps_working_locally_after_disconnect(self, make_request) -> None:
        client = _working_client()
        limiter = rate_limit(
            RateLimitConfig(interval=1_000, max_requests=1),
            redis_client=client,
            redis_settings=_no_store(),
            clock=Mock(return_value=START),
        )

        await limiter.disconnect()
        info = await limiter.check(make_request(), "EXTRACTION")

        assert info.remaining == 0
        client.pipeline.assert_not_called()
