"""Contains utility functions for synchronization actions."""

import asyncio
from typing import Awaitable, Callable, Sequence, TypeVar

import structlog

from ticket_sync_manager.utils.constants import DEFAULT_CONCURRENCY_LIMIT

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def process_in_batches(
    items: Sequence[T],
    processor: Callable[[T], Awaitable[R]],
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
) -> list[R]:
    """Run ``processor`` over items, at most ``concurrency_limit`` at a time.

    Each batch completes before the next one starts. Results keep the order of
    ``items``. The processor is expected to handle its own errors.
    """
    if concurrency_limit < 1:
        raise ValueError("concurrency_limit must be at least 1")
    results: list[R] = []
    for start in range(0, len(items), concurrency_limit):
        batch = items[start : start + concurrency_limit]
        logger.debug("Processing batch", start=start, size=len(batch), total=len(items))
        results.extend(await asyncio.gather(*(processor(item) for item in batch)))
    return results
