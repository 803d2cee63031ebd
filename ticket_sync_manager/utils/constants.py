"""Shared constants used across the application."""

# Pagination
# ----------

DEFAULT_PAGE_SIZE = 100
"""Number of items requested per page from the GitHub REST API."""

DEFAULT_INTER_PAGE_DELAY = 0.1
"""Seconds to wait between page requests to stay under burst limits."""

DEFAULT_MERGED_LOOKBACK_DAYS = 90
"""How far back (by last update) recently merged pull requests are collected."""

DEFAULT_MERGED_MAX_PAGES = 10
"""Upper bound on pages fetched for recently merged pull requests."""

# Rate Limits
# -----------

CORE_RESOURCE = "core"
"""GitHub rate limit resource name for the REST API quota."""

SEARCH_RESOURCE = "search"
"""GitHub rate limit resource name for the search API quota."""

DEFAULT_QUOTAS: dict[str, tuple[int, int]] = {
    CORE_RESOURCE: (5000, 3600),
    SEARCH_RESOURCE: (30, 60),
}
"""Assumed (limit, window seconds) per resource before any response is observed."""

DEFAULT_ROTATION_THRESHOLDS: dict[str, int] = {
    CORE_RESOURCE: 50,
    SEARCH_RESOURCE: 2,
}
"""Remaining-quota level at or below which the active token is rotated out."""

DEFAULT_SECONDARY_RATE_LIMIT_WAIT = 60.0
"""Seconds to sleep after a secondary rate limit when headers give no hint."""

MAX_SECONDARY_RATE_LIMIT_WAIT = 300.0
"""Upper bound on a single secondary rate limit sleep."""

SEARCH_REQUESTS_PER_MINUTE = 30
"""Client-side throttle for the search endpoint."""

# Concurrency
# -----------

DEFAULT_CONCURRENCY_LIMIT = 5
"""Number of per-item requests in flight at once."""
