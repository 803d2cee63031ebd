"""GitHub REST adapter that routes every request through the token pool."""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

import structlog
from githubkit import GitHub, Response
from githubkit.exception import RequestFailed, SecondaryRateLimitExceeded

from ticket_sync_manager.github.client import get_github_token_client
from ticket_sync_manager.github.exceptions import RateLimitExhaustedError
from ticket_sync_manager.github.models import ExternalIssue, ExternalPR
from ticket_sync_manager.github.search import SearchRateLimiter
from ticket_sync_manager.github.token_pool import TokenPool
from ticket_sync_manager.utils.constants import (
    CORE_RESOURCE,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SECONDARY_RATE_LIMIT_WAIT,
    MAX_SECONDARY_RATE_LIMIT_WAIT,
    SEARCH_RESOURCE,
)
from ticket_sync_manager.utils.retry import compute_rate_limit_wait, normalize_headers

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ClientFactory = Callable[[str], Any]
Operation = Callable[[Any], Awaitable[Response[Any]]]


class GitHubRestAdapter:
    """Read-only GitHub client adapter for one repository.

    Each request acquires a token from the pool, reports the response's rate
    limit headers back to it, and on a rate limited response either rotates
    to another token (primary limit, 403/429) or sleeps once (secondary
    limit) before a single retry.
    """

    def __init__(
        self,
        token_pool: TokenPool,
        owner: str,
        repo_name: str,
        github_api_url: str = "https://api.github.com",
        client_factory: ClientFactory | None = None,
        search_rate_limiter: SearchRateLimiter | None = None,
        secondary_rate_limit_wait: float = DEFAULT_SECONDARY_RATE_LIMIT_WAIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the adapter; clients are created lazily per token."""
        self.token_pool = token_pool
        self.owner = owner
        self.repo_name = repo_name
        self.github_api_url = github_api_url
        self._client_factory = client_factory or (lambda token: get_github_token_client(token, github_api_url))
        self._clients: dict[str, GitHub[Any]] = {}
        self.search_rate_limiter = search_rate_limiter or SearchRateLimiter()
        self.secondary_rate_limit_wait = secondary_rate_limit_wait
        self._sleep = sleep

    def _client_for(self, token: str) -> Any:
        if token not in self._clients:
            self._clients[token] = self._client_factory(token)
        return self._clients[token]

    async def _request(
        self,
        operation: Operation,
        description: str,
        resource: str = CORE_RESOURCE,
        throttle: Callable[[str], Awaitable[None]] | None = None,
    ) -> Response[Any]:
        """Perform a request with at most one rotation or wait before retrying.

        ``throttle`` is awaited with the token about to be used before every attempt.

        Raises:
            RateLimitExhaustedError: If no token has quota left.
            RequestFailed: If the request fails for a reason other than rate limiting,
                or is still rate limited after the retry.
        """
        token = await self.token_pool.acquire(resource)
        for attempt in range(2):
            if throttle is not None:
                await throttle(token)
            try:
                response = await operation(self._client_for(token))
            except RequestFailed as exc:
                status_code = exc.response.status_code
                headers = getattr(exc.response, "headers", None)
                if isinstance(exc, SecondaryRateLimitExceeded):
                    await self.token_pool.observe_response(token, headers, resource)
                    if attempt:
                        raise
                    wait_time = compute_rate_limit_wait(
                        headers,
                        retry_after=getattr(exc, "retry_after", None),
                        default_wait=self.secondary_rate_limit_wait,
                        max_wait=MAX_SECONDARY_RATE_LIMIT_WAIT,
                    )
                    logger.warning(
                        f"GitHub secondary rate limit exceeded, waiting {wait_time} seconds",
                        request=description,
                        resource=resource,
                        wait_time=wait_time,
                    )
                    await self._sleep(wait_time)
                    continue
                if status_code in (403, 429):
                    if attempt:
                        raise
                    reset = normalize_headers(headers).get("x-ratelimit-reset")
                    next_token = await self.token_pool.rotate_after_rate_limit(
                        token,
                        resource,
                        reset_at=float(reset) if reset and reset.isdigit() else None,
                    )
                    if next_token is None:
                        raise RateLimitExhaustedError(resource, self.token_pool.earliest_reset(resource)) from exc
                    logger.warning("GitHub rate limit hit, retrying with another token", request=description, resource=resource, status_code=status_code)
                    token = next_token
                    continue
                raise
            await self.token_pool.observe_response(token, response.headers, resource)
            return response
        raise AssertionError("unreachable")

    async def list_pull_requests_page(
        self,
        state: Literal["open", "closed", "all"],
        page: int,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> list[ExternalPR]:
        """Fetch one page of pull requests, most recently updated first."""
        response = await self._request(
            lambda client: client.rest.pulls.async_list(
                owner=self.owner,
                repo=self.repo_name,
                state=state,
                sort="updated",
                direction="desc",
                per_page=per_page,
                page=page,
            ),
            description=f"list {state} pull requests page {page}",
        )
        return [ExternalPR.from_github(pull_request) for pull_request in response.parsed_data]

    async def list_issues_page(
        self,
        page: int,
        per_page: int = DEFAULT_PAGE_SIZE,
        state: Literal["open", "closed", "all"] = "all",
        since: datetime | None = None,
    ) -> list[ExternalIssue]:
        """Fetch one page of issues; the issues endpoint also returns pull requests, which are flagged."""
        params: dict[str, Any] = {"state": state, "sort": "updated", "direction": "desc", "per_page": per_page, "page": page}
        if since is not None:
            params["since"] = since
        response = await self._request(
            lambda client: client.rest.issues.async_list_for_repo(owner=self.owner, repo=self.repo_name, **params),
            description=f"list issues page {page}",
        )
        return [ExternalIssue.from_github(issue) for issue in response.parsed_data]

    async def get_pull_request(self, pull_number: int, owner: str | None = None, repo: str | None = None) -> ExternalPR | None:
        """Fetch a single pull request, optionally from another repository. Returns None if it does not exist."""
        owner = owner or self.owner
        repo = repo or self.repo_name
        try:
            response = await self._request(
                lambda client: client.rest.pulls.async_get(owner=owner, repo=repo, pull_number=pull_number),
                description=f"get pull request {owner}/{repo}#{pull_number}",
            )
        except RequestFailed as exc:
            if exc.response.status_code == 404:
                logger.info("Pull request not found", owner=owner, repo=repo, pull_number=pull_number)
                return None
            raise
        return ExternalPR.from_github(response.parsed_data)

    async def search_pull_request_numbers(self, query: str, per_page: int = DEFAULT_PAGE_SIZE) -> list[int]:
        """Run a search query under the search quota and return matching pull request numbers."""
        response = await self._request(
            lambda client: client.rest.search.async_issues_and_pull_requests(q=query, per_page=per_page),
            description=f"search {query!r}",
            resource=SEARCH_RESOURCE,
            throttle=self.search_rate_limiter.wait_if_needed,
        )
        items = getattr(response.parsed_data, "items", None) or []
        return [item.number for item in items if getattr(item, "pull_request", None) is not None]

    async def refresh_rate_limits(self) -> None:
        """Load every token's core and search quota from the rate limit endpoint.

        The endpoint itself does not count against any quota.
        """
        for token in self.token_pool.tokens:
            response = await self._client_for(token).rest.rate_limit.async_get()
            resources = response.parsed_data.resources
            for resource in (CORE_RESOURCE, SEARCH_RESOURCE):
                quota = getattr(resources, resource, None)
                if quota is None:
                    continue
                await self.token_pool.observe_response(
                    token,
                    {
                        "x-ratelimit-resource": resource,
                        "x-ratelimit-remaining": str(quota.remaining),
                        "x-ratelimit-limit": str(quota.limit),
                        "x-ratelimit-reset": str(quota.reset),
                    },
                    resource,
                )
