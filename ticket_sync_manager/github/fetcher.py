"""Paginated retrieval of pull requests and issues from the GitHub REST API."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypeVar

import structlog

from ticket_sync_manager.github.adapter import GitHubRestAdapter
from ticket_sync_manager.github.exceptions import GITHUB_READ_ERRORS
from ticket_sync_manager.github.models import ExternalIssue, ExternalPR
from ticket_sync_manager.utils.constants import (
    DEFAULT_INTER_PAGE_DELAY,
    DEFAULT_MERGED_LOOKBACK_DAYS,
    DEFAULT_MERGED_MAX_PAGES,
    DEFAULT_PAGE_SIZE,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

PageFetch = Callable[[int, int], Awaitable[list[T]]]


class PagedFetcher:
    """Generic page loop over the GitHub REST API.

    Paging stops when a page is empty, shorter than the page size, when every
    item on a page satisfies ``stop_predicate``, or after ``max_pages``. A
    page that still fails after the adapter's single rotation/retry ends the
    loop and whatever was collected so far is returned.
    """

    def __init__(
        self,
        adapter: GitHubRestAdapter,
        page_size: int = DEFAULT_PAGE_SIZE,
        inter_page_delay: float = DEFAULT_INTER_PAGE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        """Initialize the fetcher."""
        self.adapter = adapter
        self.page_size = page_size
        self.inter_page_delay = inter_page_delay
        self._sleep = sleep
        self._now = now

    async def fetch_all_pages(
        self,
        fetch_page: PageFetch[T],
        filter_predicate: Callable[[T], bool] | None = None,
        stop_predicate: Callable[[T], bool] | None = None,
        max_pages: int | None = None,
        description: str = "items",
    ) -> list[T]:
        """Collect items across pages, returning a partial result on persistent failure."""
        collected: list[T] = []
        page = 1
        while max_pages is None or page <= max_pages:
            try:
                items = await fetch_page(page, self.page_size)
            except GITHUB_READ_ERRORS as exc:
                logger.warning(
                    "Stopped paging after a failed request, returning partial result",
                    description=description,
                    page=page,
                    collected=len(collected),
                    error=str(exc),
                )
                break

            if not items:
                break

            collected.extend(item for item in items if filter_predicate is None or filter_predicate(item))

            if stop_predicate is not None and all(stop_predicate(item) for item in items):
                logger.debug("Every item on page is outside the window, stopping", description=description, page=page)
                break
            if len(items) < self.page_size:
                break

            page += 1
            await self._sleep(self.inter_page_delay)

        logger.info("Fetched paginated results", description=description, pages=page, count=len(collected))
        return collected

    async def fetch_open_pull_requests(self) -> list[ExternalPR]:
        """Fetch every open pull request in the repository."""
        return await self.fetch_all_pages(
            lambda page, per_page: self.adapter.list_pull_requests_page("open", page, per_page),
            description="open pull requests",
        )

    async def fetch_recently_merged_pull_requests(
        self,
        lookback_days: int = DEFAULT_MERGED_LOOKBACK_DAYS,
        max_pages: int = DEFAULT_MERGED_MAX_PAGES,
    ) -> list[ExternalPR]:
        """Fetch merged pull requests updated within the lookback window."""
        cutoff = self._now() - timedelta(days=lookback_days)

        def outside_window(pull_request: ExternalPR) -> bool:
            return pull_request.updated_at is not None and pull_request.updated_at < cutoff

        return await self.fetch_all_pages(
            lambda page, per_page: self.adapter.list_pull_requests_page("closed", page, per_page),
            filter_predicate=lambda pull_request: pull_request.merged and not outside_window(pull_request),
            stop_predicate=outside_window,
            max_pages=max_pages,
            description="recently merged pull requests",
        )

    async def fetch_recent_issues(self, lookback_days: int = DEFAULT_MERGED_LOOKBACK_DAYS) -> list[ExternalIssue]:
        """Fetch issues of any state updated within the lookback window."""
        since = self._now() - timedelta(days=lookback_days)
        return await self.fetch_all_pages(
            lambda page, per_page: self.adapter.list_issues_page(page, per_page, state="all", since=since),
            filter_predicate=lambda issue: not issue.is_pull_request,
            description="recently updated issues",
        )
