"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    retry_after: int
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class RateLimitExceededError(AppError):
    """Raised when a caller exceeds its request budget for a window.

    Attributes:
        retry_after: Milliseconds until the caller may retry.
    """

    def __init__(self, retry_after: int, message: str = "Rate limit exceeded") -> None:
        self.retry_after = max(0, int(retry_after))
        super().__init__(
            code="rate_limit_exceeded",
            message=message,
            details={"retry_after": self.retry_after},
        )
