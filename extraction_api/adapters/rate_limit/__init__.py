"""Rate limiting adapters.

``RateLimiter`` counts requests per client in a sliding window, using Redis
when it is configured and reachable and an in-process window otherwise.
"""

from extraction_api.adapters.rate_limit.base import RateLimitConfig, RateLimitInfo
from extraction_api.adapters.rate_limit.limiter import RateLimiter, rate_limit

__all__ = ["RateLimitConfig", "RateLimitInfo", "RateLimiter", "rate_limit"]
