"""Pool of GitHub access tokens with per-resource quota tracking and rotation."""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping

import structlog

from ticket_sync_manager.github.exceptions import RateLimitExhaustedError
from ticket_sync_manager.utils.constants import (
    CORE_RESOURCE,
    DEFAULT_QUOTAS,
    DEFAULT_ROTATION_THRESHOLDS,
)
from ticket_sync_manager.utils.retry import normalize_headers

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class TokenClass(str, Enum):
    """Where a token came from."""

    APP = "app"
    PERSONAL = "personal"


@dataclass
class TokenState:
    """Quota bookkeeping for one token against one rate limit resource."""

    token: str
    token_class: TokenClass
    resource: str
    remaining: int
    limit: int
    reset_at: float
    window: int
    last_used: float = 0.0

    def refresh_if_reset(self, now: float) -> None:
        """Assume a full quota again once the reset time has passed."""
        if now >= self.reset_at:
            self.remaining = self.limit
            self.reset_at = now + self.window

    @property
    def exhausted(self) -> bool:
        """Whether the token has no quota left for this resource."""
        return self.remaining <= 0


class TokenPool:
    """Owns the GitHub tokens for a run and decides which one to use.

    Quotas are tracked independently per rate limit resource, so the strict
    search quota never causes rotation of the core quota or vice versa.
    Tokens are referred to in logs by their 1-based position and class, never
    by value.
    """

    def __init__(
        self,
        personal_tokens: list[str] | None = None,
        app_tokens: list[str] | None = None,
        rotation_thresholds: Mapping[str, int] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the pool, dropping blank tokens."""
        self._clock = clock
        self._tokens: list[tuple[str, TokenClass]] = []
        for token in app_tokens or []:
            if token and token.strip():
                self._tokens.append((token.strip(), TokenClass.APP))
        for token in personal_tokens or []:
            if token and token.strip():
                self._tokens.append((token.strip(), TokenClass.PERSONAL))
        if not self._tokens:
            raise ValueError("No valid GitHub tokens provided")

        self._thresholds: dict[str, int] = dict(DEFAULT_ROTATION_THRESHOLDS)
        if rotation_thresholds:
            self._thresholds.update(rotation_thresholds)
        self._states: dict[str, list[TokenState]] = {}
        self._active: dict[str, int] = {}
        self._lock = asyncio.Lock()

        logger.info(
            "Initialized GitHub token pool",
            personal_tokens=sum(1 for _, kind in self._tokens if kind == TokenClass.PERSONAL),
            app_tokens=sum(1 for _, kind in self._tokens if kind == TokenClass.APP),
        )

    def __len__(self) -> int:
        """Number of distinct tokens in the pool."""
        return len(self._tokens)

    @property
    def tokens(self) -> list[str]:
        """Tokens in pool order."""
        return [token for token, _ in self._tokens]

    def _states_for(self, resource: str) -> list[TokenState]:
        if resource not in self._states:
            limit, window = DEFAULT_QUOTAS.get(resource, DEFAULT_QUOTAS[CORE_RESOURCE])
            now = self._clock()
            self._states[resource] = [
                TokenState(
                    token=token,
                    token_class=token_class,
                    resource=resource,
                    remaining=limit,
                    limit=limit,
                    reset_at=now + window,
                    window=window,
                )
                for token, token_class in self._tokens
            ]
            self._active[resource] = 0
        return self._states[resource]

    def _index_of(self, token: str) -> int:
        for index, (candidate, _) in enumerate(self._tokens):
            if candidate == token:
                return index
        raise KeyError("Token is not part of this pool")

    def threshold(self, resource: str = CORE_RESOURCE) -> int:
        """Proactive rotation threshold for a resource."""
        return self._thresholds.get(resource, self._thresholds[CORE_RESOURCE])

    def state(self, token: str, resource: str = CORE_RESOURCE) -> TokenState:
        """Return the quota state of a token for a resource."""
        return self._states_for(resource)[self._index_of(token)]

    def current_token(self, resource: str = CORE_RESOURCE) -> str:
        """Return the active token for a resource without rotating."""
        states = self._states_for(resource)
        return states[self._active[resource]].token

    def next_available_token(self, resource: str = CORE_RESOURCE, threshold: int = 0) -> str | None:
        """Select the best token with quota left and make it active.

        Tokens above ``threshold`` are preferred over tokens that merely have
        some quota left. Among equals the soonest reset wins, then App tokens,
        then pool order. Returns None when every token is exhausted.
        """
        now = self._clock()
        states = self._states_for(resource)
        for token_state in states:
            token_state.refresh_if_reset(now)

        available = [index for index, token_state in enumerate(states) if not token_state.exhausted]
        if not available:
            earliest = self.earliest_reset(resource)
            logger.warning(
                "All GitHub tokens exhausted",
                resource=resource,
                tokens=len(states),
                next_reset_in_seconds=max(0, int(earliest - now)),
            )
            return None

        preferred = [index for index in available if states[index].remaining > threshold] or available
        chosen = min(
            preferred,
            key=lambda index: (
                states[index].reset_at,
                states[index].token_class != TokenClass.APP,
                index,
            ),
        )
        if chosen != self._active[resource]:
            logger.info(
                "Rotated GitHub token",
                resource=resource,
                from_token=self._active[resource] + 1,
                to_token=chosen + 1,
                token_class=states[chosen].token_class.value,
                remaining=states[chosen].remaining,
                limit=states[chosen].limit,
            )
        self._active[resource] = chosen
        return states[chosen].token

    def token_with_proactive_rotation(self, threshold: int | None = None, resource: str = CORE_RESOURCE) -> str:
        """Return the active token, rotating first if its quota is at or below the threshold.

        Raises:
            RateLimitExhaustedError: If no token has quota left for the resource.
        """
        if threshold is None:
            threshold = self.threshold(resource)
        states = self._states_for(resource)
        active = states[self._active[resource]]
        active.refresh_if_reset(self._clock())
        if active.remaining > threshold:
            return active.token

        logger.debug(
            "Active token at or below rotation threshold",
            resource=resource,
            token=self._active[resource] + 1,
            remaining=active.remaining,
            threshold=threshold,
        )
        token = self.next_available_token(resource, threshold=threshold)
        if token is None:
            raise RateLimitExhaustedError(resource, self.earliest_reset(resource))
        return token

    def record_response(self, token: str, headers: Mapping[str, Any] | None, resource: str | None = None) -> str:
        """Update a token's quota from the rate limit headers of a response.

        Returns the resource the headers were accounted against.
        """
        normalized = normalize_headers(headers)
        resource = normalized.get("x-ratelimit-resource") or resource or CORE_RESOURCE
        token_state = self.state(token, resource)
        now = self._clock()
        token_state.last_used = now

        remaining = normalized.get("x-ratelimit-remaining")
        limit = normalized.get("x-ratelimit-limit")
        reset = normalized.get("x-ratelimit-reset")
        try:
            if remaining is not None:
                token_state.remaining = int(remaining)
            if limit is not None:
                token_state.limit = int(limit)
            if reset is not None:
                token_state.reset_at = float(reset)
        except ValueError:
            logger.warning("Ignoring malformed rate limit headers", resource=resource, remaining=remaining, limit=limit, reset=reset)

        logger.debug(
            "Recorded GitHub rate limit",
            resource=resource,
            token=self._index_of(token) + 1,
            token_class=token_state.token_class.value,
            remaining=token_state.remaining,
            limit=token_state.limit,
        )
        return resource

    def mark_exhausted(self, token: str, resource: str = CORE_RESOURCE, reset_at: float | None = None) -> None:
        """Mark a token as out of quota after a rate limited response."""
        token_state = self.state(token, resource)
        token_state.remaining = 0
        if reset_at is not None:
            token_state.reset_at = reset_at
        logger.info(
            "GitHub token rate limited",
            resource=resource,
            token=self._index_of(token) + 1,
            token_class=token_state.token_class.value,
            reset_in_seconds=max(0, int(token_state.reset_at - self._clock())),
        )

    def earliest_reset(self, resource: str = CORE_RESOURCE) -> float:
        """Minimum reset time across all tokens for a resource."""
        return min(token_state.reset_at for token_state in self._states_for(resource))

    async def acquire(self, resource: str = CORE_RESOURCE) -> str:
        """Atomically pick a token for a request, rotating proactively."""
        async with self._lock:
            return self.token_with_proactive_rotation(resource=resource)

    async def observe_response(self, token: str, headers: Mapping[str, Any] | None, resource: str | None = None) -> None:
        """Atomically record a response and rotate if the active token crossed the threshold."""
        async with self._lock:
            observed_resource = self.record_response(token, headers, resource)
            states = self._states_for(observed_resource)
            active = states[self._active[observed_resource]]
            if active.token == token and active.remaining <= self.threshold(observed_resource):
                self.next_available_token(observed_resource, threshold=self.threshold(observed_resource))

    async def rotate_after_rate_limit(self, token: str, resource: str = CORE_RESOURCE, reset_at: float | None = None) -> str | None:
        """Atomically mark a token exhausted and return the replacement, if any."""
        async with self._lock:
            self.mark_exhausted(token, resource, reset_at)
            return self.next_available_token(resource)

    def status(self, resource: str = CORE_RESOURCE) -> list[dict[str, Any]]:
        """Describe every token's quota for a resource without exposing secrets."""
        now = self._clock()
        return [
            {
                "index": index + 1,
                "token_class": token_state.token_class.value,
                "active": index == self._active[resource],
                "remaining": token_state.remaining,
                "limit": token_state.limit,
                "reset_in_seconds": max(0, int(token_state.reset_at - now)),
            }
            for index, token_state in enumerate(self._states_for(resource))
        ]
