"""Client-side throttle for the GitHub Search API."""

import asyncio
import time
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List

import structlog

from ticket_sync_manager.utils.constants import SEARCH_REQUESTS_PER_MINUTE

logger = structlog.get_logger(__name__)


class SearchRateLimiter:
    """Handle Search API's stricter rate limits (30 requests per minute per token).

    The search quota belongs to each token, so every token keeps its own
    one-minute window and rotating tokens lifts the cap.
    """

    def __init__(
        self,
        max_per_minute: int = SEARCH_REQUESTS_PER_MINUTE,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the rate limiter.

        Args:
            max_per_minute: Maximum requests per minute for one token (default: 30 for search API)
            clock: Source of the current time in seconds
            sleep: Coroutine used to wait
        """
        self.max_per_minute = max_per_minute
        self.request_times: Dict[str, List[float]] = defaultdict(list)
        self._clock = clock
        self._sleep = sleep

    async def wait_if_needed(self, token: str) -> None:
        """Wait if the token is hitting its rate limit."""
        now = self._clock()
        # Remove requests older than 1 minute
        request_times = [t for t in self.request_times[token] if now - t < 60]

        if len(request_times) >= self.max_per_minute:
            # Wait until oldest request is > 1 minute old
            wait_time = 60 - (now - request_times[0]) + 1
            logger.info("Search API rate limit reached for token, waiting", wait_seconds=wait_time, current_requests=len(request_times))
            await self._sleep(wait_time)
            now = self._clock()
            request_times = [t for t in request_times if now - t < 60]

        request_times.append(now)
        self.request_times[token] = request_times
