"""Configuration models produced by reconciling CLI options and environment settings."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class GitHubAuthenticationType(str, Enum):
    """Enum for GitHub authentication types."""

    PAT = "pat"
    APP = "app"
    PAT_AND_APP = "pat_and_app"


@dataclass
class PullRequestReference:
    """A pull request that lives in an explicitly named repository."""

    owner: str
    repo: str
    number: int

    def __str__(self) -> str:
        """Render the reference in owner/repo#number form."""
        return f"{self.owner}/{self.repo}#{self.number}"


@dataclass
class SyncConfig:
    """Configuration class for the synchronization commands."""

    debug: bool
    dry_run: bool
    github_api_url: str
    github_web_host: str
    github_authentication_type: GitHubAuthenticationType
    github_tokens: list[str]
    github_app_id: str | None
    github_app_private_key_path: Path | None
    github_app_installation_id: str | None
    repo: str
    tracker_api_key: str
    tracker_team_id: str
    tracker_api_url: str
    database_path: Path
    organization_engineers: list[str] = field(default_factory=list)
    organization_engineers_env: str | None = None
    user_mappings: dict[str, str] = field(default_factory=dict)
    user_mappings_env: str | None = None
    roster_path: Path | None = None
    default_assignee_id: str | None = None
    issue_repository_overrides: dict[int, list[PullRequestReference]] = field(default_factory=dict)
    concurrency_limit: int = 5
    merged_lookback_days: int = 90
    search_fallback: bool = True
