"""Unit tests for the GitHub token pool."""

import pytest

from ticket_sync_manager.github.exceptions import RateLimitExhaustedError
from ticket_sync_manager.github.token_pool import TokenClass, TokenPool


class FakeClock:
    """A controllable clock."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def rate_limit_headers(remaining: int, reset: float, limit: int = 5000, resource: str = "core") -> dict[str, str]:
    return {
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Reset": str(int(reset)),
        "X-RateLimit-Resource": resource,
    }


def test_blank_tokens_are_dropped() -> None:
    """Blank and whitespace-only tokens do not join the pool."""
    pool = TokenPool(personal_tokens=["", "  ", " tok-a ", "tok-b"])
    assert len(pool) == 2
    assert pool.tokens == ["tok-a", "tok-b"]


def test_no_valid_tokens_raises() -> None:
    """A pool needs at least one usable token."""
    with pytest.raises(ValueError, match="No valid GitHub tokens"):
        TokenPool(personal_tokens=["", " "])


def test_app_tokens_are_preferred_on_ties() -> None:
    """App tokens come before personal tokens when quotas are equal."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["personal"], app_tokens=["app"], clock=clock)
    assert pool.next_available_token() == "app"
    assert pool.state("app").token_class is TokenClass.APP


def test_rotates_when_active_token_reaches_threshold() -> None:
    """The active token is swapped once its remaining quota is at or below the threshold."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["tok-a", "tok-b"], clock=clock)
    assert pool.token_with_proactive_rotation() == "tok-a"

    # When
    pool.record_response("tok-a", rate_limit_headers(remaining=50, reset=clock.now + 600))

    # Then
    assert pool.token_with_proactive_rotation() == "tok-b"
    assert pool.current_token() == "tok-b"


def test_keeps_active_token_above_threshold() -> None:
    """No rotation happens while the active token has headroom."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["tok-a", "tok-b"], clock=clock)
    pool.record_response("tok-a", rate_limit_headers(remaining=51, reset=clock.now + 600))
    assert pool.token_with_proactive_rotation() == "tok-a"


def test_soonest_reset_wins_among_available_tokens() -> None:
    """Among tokens with headroom the one resetting soonest is chosen."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["tok-a", "tok-b", "tok-c"], clock=clock)
    pool.record_response("tok-a", rate_limit_headers(remaining=0, reset=clock.now + 3000))
    pool.record_response("tok-b", rate_limit_headers(remaining=4000, reset=clock.now + 2000))
    pool.record_response("tok-c", rate_limit_headers(remaining=4000, reset=clock.now + 500))

    assert pool.next_available_token() == "tok-c"


def test_all_tokens_exhausted_raises_with_earliest_reset() -> None:
    """When nothing has quota left the error carries the earliest reset time."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["tok-a", "tok-b"], clock=clock)
    pool.mark_exhausted("tok-a", reset_at=clock.now + 900)
    pool.mark_exhausted("tok-b", reset_at=clock.now + 300)

    with pytest.raises(RateLimitExhaustedError) as exc_info:
        pool.token_with_proactive_rotation()

    assert exc_info.value.resource == "core"
    assert exc_info.value.reset_at == clock.now + 300


def test_exhausted_token_recovers_after_reset() -> None:
    """A token whose reset time has passed is assumed to have full quota again."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["tok-a"], clock=clock)
    pool.mark_exhausted("tok-a", reset_at=clock.now + 60)
    assert pool.next_available_token() is None

    # When
    clock.now += 61

    # Then
    assert pool.next_available_token() == "tok-a"
    assert pool.state("tok-a").remaining == pool.state("tok-a").limit


def test_search_quota_is_tracked_separately_from_core() -> None:
    """Exhausting the search quota does not rotate the core token."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["tok-a", "tok-b"], clock=clock)

    resource = pool.record_response("tok-a", rate_limit_headers(remaining=0, reset=clock.now + 60, limit=30, resource="search"))

    assert resource == "search"
    assert pool.token_with_proactive_rotation(resource="search") == "tok-b"
    assert pool.token_with_proactive_rotation(resource="core") == "tok-a"


def test_malformed_headers_are_ignored() -> None:
    """Unparseable rate limit headers leave the quota untouched."""
    pool = TokenPool(personal_tokens=["tok-a"], clock=FakeClock())
    before = pool.state("tok-a").remaining
    pool.record_response("tok-a", {"x-ratelimit-remaining": "many"})
    assert pool.state("tok-a").remaining == before


def test_status_does_not_expose_token_values() -> None:
    """Status rows identify tokens by position and class only."""
    pool = TokenPool(personal_tokens=["secret-one"], app_tokens=["secret-two"], clock=FakeClock())
    rows = pool.status()

    assert [row["index"] for row in rows] == [1, 2]
    assert [row["token_class"] for row in rows] == ["app", "personal"]
    assert "secret" not in repr(rows)


@pytest.mark.asyncio
async def test_observe_response_rotates_active_token() -> None:
    """Observing a low quota on the active token switches to the next one."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["tok-a", "tok-b"], clock=clock)
    assert await pool.acquire() == "tok-a"

    await pool.observe_response("tok-a", rate_limit_headers(remaining=3, reset=clock.now + 600))

    assert pool.current_token() == "tok-b"


@pytest.mark.asyncio
async def test_rotate_after_rate_limit_returns_replacement() -> None:
    """A rate limited token is marked exhausted and a replacement returned."""
    clock = FakeClock()
    pool = TokenPool(personal_tokens=["tok-a", "tok-b"], clock=clock)

    replacement = await pool.rotate_after_rate_limit("tok-a", reset_at=clock.now + 600)

    assert replacement == "tok-b"
    assert pool.state("tok-a").exhausted


@pytest.mark.asyncio
async def test_rotate_after_rate_limit_with_single_token_returns_none() -> None:
    """With one token there is nothing to rotate to."""
    pool = TokenPool(personal_tokens=["tok-a"], clock=FakeClock())
    assert await pool.rotate_after_rate_limit("tok-a") is None
