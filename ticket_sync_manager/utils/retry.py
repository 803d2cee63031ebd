"""Helpers for interpreting GitHub rate limit responses.

Retries in this application are single-shot: one token rotation or one
explicit wait, then the caller gives up. These helpers turn the headers of a
rate-limited response into the number of seconds worth waiting.
"""

import time
from datetime import timedelta
from typing import Any, Mapping

import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def normalize_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
    """Return a lowercase-keyed copy of response headers."""
    if not headers:
        return {}
    return {str(key).lower(): str(value) for key, value in headers.items()}


def compute_rate_limit_wait(
    headers: Mapping[str, Any] | None,
    retry_after: timedelta | None = None,
    default_wait: float = 60.0,
    max_wait: float = 300.0,
    now: float | None = None,
) -> float:
    """Compute how long to sleep after a rate limited response.

    Precedence is the exception's parsed ``retry_after``, then the
    ``retry-after`` header, then ``x-ratelimit-reset``, then ``default_wait``.
    The result is capped at ``max_wait``.
    """
    if retry_after is not None and retry_after.total_seconds() > 0:
        return min(retry_after.total_seconds(), max_wait)

    normalized = normalize_headers(headers)
    wait_time = default_wait

    retry_after_header = normalized.get("retry-after")
    if retry_after_header:
        try:
            wait_time = float(retry_after_header)
            logger.debug("Using retry-after header value", retry_after=wait_time)
            return min(wait_time, max_wait)
        except ValueError:
            logger.warning("Invalid retry-after header value", retry_after=retry_after_header)

    rate_limit_reset = normalized.get("x-ratelimit-reset")
    if rate_limit_reset:
        try:
            reset_timestamp = int(rate_limit_reset)
            current_timestamp = int(now if now is not None else time.time())
            if reset_timestamp > current_timestamp:
                wait_time = reset_timestamp - current_timestamp + 1
                logger.debug("Using x-ratelimit-reset header", wait_time=wait_time)
        except ValueError:
            logger.warning("Invalid x-ratelimit-reset header value", rate_limit_reset=rate_limit_reset)

    return min(wait_time, max_wait)
