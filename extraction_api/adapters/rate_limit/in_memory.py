"""In-memory sliding-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around the filter-and-append sequence.
- Never performs I/O, so it is always available as a fallback.
"""

from __future__ import annotations

import logging
import threading

from extraction_api.adapters.rate_limit.base import AbstractWindow, RateLimitConfig, RateLimitInfo
from extraction_api.core.errors import RateLimitExceededError

logger = logging.getLogger(__name__)


class LocalWindow(AbstractWindow):
    """Sliding window kept in a per-instance dict of timestamp lists.

    Each key maps to the epoch-ms timestamps of its counted requests, oldest
    first. Stale entries are purged lazily when the key is checked, and all
    keys are swept once the map grows past ``max_store_size``.

    Important:
        Evicting a key only makes the limiter more permissive for that key
        (its window restarts empty), so ``max_store_size`` is a memory bound.
    """

    def __init__(self, config: RateLimitConfig) -> None:
        super().__init__(config)
        self._lock = threading.Lock()
        self._entries: dict[str, list[int]] = {}

    @property
    def size(self) -> int:
        """Number of keys currently tracked."""
        return len(self._entries)

    def live_count(self, key: str, now: int) -> int:
        """Entries of ``key`` still inside the window at ``now``."""
        window_start = now - self.config.interval
        with self._lock:
            return sum(1 for ts in self._entries.get(key, ()) if ts > window_start)

    async def hit(self, key: str, now: int) -> RateLimitInfo:
        return self.consume(key, now)

    def consume(self, key: str, now: int) -> RateLimitInfo:
        """Synchronous core of :meth:`hit`.

        Raises:
            RateLimitExceededError: When the live count already meets the limit;
                ``retry_after`` is the time until the oldest entry ages out.
        """
        interval = self.config.interval
        max_requests = self.config.max_requests
        window_start = now - interval

        with self._lock:
            timestamps = [ts for ts in self._entries.get(key, ()) if ts > window_start]

            if len(timestamps) >= max_requests:
                self._entries[key] = timestamps
                raise RateLimitExceededError(retry_after=timestamps[0] + interval - now)

            timestamps.append(now)
            self._entries[key] = timestamps

            if len(self._entries) > self.config.max_store_size:
                self._sweep_locked(now)

        return RateLimitInfo(
            remaining=max_requests - len(timestamps),
            reset=now + interval,
            total=max_requests,
        )

    def sweep(self, now: int) -> int:
        """Drop stale entries everywhere and forget keys left empty.

        Returns:
            Number of keys removed.
        """
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: int) -> int:
        window_start = now - self.config.interval
        before = len(self._entries)
        for key in list(self._entries):
            live = [ts for ts in self._entries[key] if ts > window_start]
            if live:
                self._entries[key] = live
            else:
                del self._entries[key]

        removed = before - len(self._entries)
        logger.debug(
            "rate_limit.sweep",
            extra={"keys_before": before, "keys_removed": removed},
        )
        return removed

    def clear(self) -> None:
        """Forget every tracked key."""
        with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        self.clear()
