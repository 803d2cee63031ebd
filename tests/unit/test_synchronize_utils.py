"""Contains unit tests for the synchronize utils."""

import asyncio

import pytest

from ticket_sync_manager.synchronize.utils import process_in_batches


@pytest.mark.asyncio
async def test_process_in_batches_keeps_order() -> None:
    async def double(value: int) -> int:
        await asyncio.sleep(0.01 * (5 - value))
        return value * 2

    assert await process_in_batches([1, 2, 3, 4, 5], double, concurrency_limit=2) == [2, 4, 6, 8, 10]


@pytest.mark.asyncio
async def test_process_in_batches_limits_concurrency() -> None:
    in_flight = 0
    peak = 0

    async def track(value: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return value

    await process_in_batches(list(range(7)), track, concurrency_limit=3)

    assert peak == 3


@pytest.mark.asyncio
async def test_process_in_batches_empty() -> None:
    async def identity(value: int) -> int:
        return value

    assert await process_in_batches([], identity) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, -1])
async def test_process_in_batches_rejects_bad_limit(limit: int) -> None:
    async def identity(value: int) -> int:
        return value

    with pytest.raises(ValueError):
        await process_in_batches([1], identity, concurrency_limit=limit)
