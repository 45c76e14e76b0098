"""Rate limiter interfaces.

A limiter rule is described by an immutable ``RateLimitConfig``. Counting is
delegated to a window backend implementing ``AbstractWindow``; the limiter
picks the distributed backend while the shared store is healthy and the local
one otherwise, so both must honour the same contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

DEFAULT_MAX_STORE_SIZE = 10_000


@dataclass(frozen=True)
class RateLimitConfig:
    """Configuration of a single rate limit rule.

    Attributes:
        interval: Sliding window length in milliseconds.
        max_requests: Requests allowed per window.
        block_duration: Optional block applied to a key on violation (ms).
            Only the distributed window extends blocks; the local window
            always reopens once the oldest entry ages out.
        max_store_size: Keys kept by the local window before a sweep runs.

    Raises:
        ValueError: If any value is out of range.
    """

    interval: int
    max_requests: int
    block_duration: int | None = None
    max_store_size: int = DEFAULT_MAX_STORE_SIZE

    def __post_init__(self) -> None:
        if self.interval < 1:
            raise ValueError("interval must be >= 1 ms")
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.block_duration is not None and self.block_duration < 1:
            raise ValueError("block_duration must be >= 1 ms when set")
        if self.max_store_size < 1:
            raise ValueError("max_store_size must be >= 1")


@dataclass(frozen=True)
class RateLimitInfo:
    """Budget left after an allowed request.

    Attributes:
        remaining: Requests left in the current window.
        reset: Epoch milliseconds at which the window (or block) expires.
        total: Configured requests per window.
    """

    remaining: int
    reset: int
    total: int


class AbstractWindow(ABC):
    """Sliding-window counter for one rule."""

    def __init__(self, config: RateLimitConfig) -> None:
        self.config = config

    @abstractmethod
    async def hit(self, key: str, now: int) -> RateLimitInfo:
        """Count one request for ``key`` at ``now`` (epoch ms).

        Returns:
            RateLimitInfo describing the remaining budget.

        Raises:
            RateLimitExceededError: When the key is over its budget.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by the window. Safe to call repeatedly."""
        raise NotImplementedError
