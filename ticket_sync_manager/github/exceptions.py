"""Contains exceptions raised when talking to the GitHub API."""

from datetime import datetime, timezone

from githubkit.exception import GitHubException


class RateLimitExhaustedError(Exception):
    """Raised when every token in the pool is out of quota for a resource."""

    def __init__(self, resource: str, reset_at: float) -> None:
        """Initializes the exception with the resource and the earliest reset time."""
        reset_time = datetime.fromtimestamp(reset_at, tz=timezone.utc)
        super().__init__(f"All GitHub tokens exhausted for the {resource} quota; next reset at {reset_time.isoformat()}")
        self.resource = resource
        self.reset_at = reset_at


# Failures after which a GitHub read is given up while the run carries on.
GITHUB_READ_ERRORS: tuple[type[Exception], ...] = (RateLimitExhaustedError, GitHubException)
