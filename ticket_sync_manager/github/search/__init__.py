"""GitHub Search API helpers."""

from .rate_limiter import SearchRateLimiter

__all__ = ["SearchRateLimiter"]
