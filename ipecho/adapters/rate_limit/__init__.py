"""Rate limiting adapters.

The HTTP layer depends on ``AbstractRateLimiter`` only, so the in-memory
limiter can later be replaced by a shared store (e.g. Redis) when the
service runs more than one instance.
"""

from ipecho.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from ipecho.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter

__all__ = [
    "AbstractRateLimiter",
    "InMemoryFixedWindowRateLimiter",
    "RateLimitResult",
]
