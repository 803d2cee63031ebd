"""Utility modules for shared functionality."""

from .constants import (
    CORE_RESOURCE,
    DEFAULT_CONCURRENCY_LIMIT,
    DEFAULT_PAGE_SIZE,
    SEARCH_RESOURCE,
)
from .retry import compute_rate_limit_wait

__all__ = [
    "CORE_RESOURCE",
    "SEARCH_RESOURCE",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_CONCURRENCY_LIMIT",
    "compute_rate_limit_wait",
]
