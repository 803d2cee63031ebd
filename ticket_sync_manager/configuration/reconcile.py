"""Reconcile configuration from CLI options and environment settings."""

import json
import re
from pathlib import Path

from ticket_sync_manager.configuration.exceptions import (
    GitHubAuthenticationConfigurationUndefinedError,
    InvalidConfigurationValueError,
    RequiredConfigurationElementError,
)
from ticket_sync_manager.configuration.models import GitHubAuthenticationType, PullRequestReference, SyncConfig
from ticket_sync_manager.utils.constants import DEFAULT_CONCURRENCY_LIMIT, DEFAULT_MERGED_LOOKBACK_DAYS
from ticket_sync_manager.utils.github import split_repository_in_configuration, web_host_from_api_url

PULL_REQUEST_REFERENCE_PATTERN = re.compile(r"^(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)#(?P<number>\d+)$")


def parse_github_tokens(value: str | None) -> list[str]:
    """Split a comma-separated token list, dropping blanks."""
    if not value:
        return []
    return [token.strip() for token in value.split(",") if token.strip()]


async def validate_github_authentication_configuration(
    github_tokens: list[str],
    github_app_id: str | None,
    github_app_private_key_path: Path | None,
    github_app_installation_id: str | None,
) -> GitHubAuthenticationType:
    """Validates the GitHub authentication configuration.

    Tokens and a GitHub App may be combined, in which case both join the
    rotation pool. The installation ID is optional; without it the
    repository's installation is looked up.

    Args:
        github_tokens (list[str]): Personal access tokens.
        github_app_id (str | None): The GitHub App ID.
        github_app_private_key_path (Path | None): The path to the GitHub App private key.
        github_app_installation_id (str | None): The GitHub App installation ID.

    Raises:
        GitHubAuthenticationConfigurationUndefinedError: If nothing is configured, or the App configuration is incomplete.

    Returns:
        GitHubAuthenticationType: The type of GitHub authentication used.
    """
    app_configured = bool(github_app_id and github_app_private_key_path)
    if (github_app_id or github_app_private_key_path or github_app_installation_id) and not app_configured:
        missing_settings: list[dict[str, str]] = []
        if not github_app_id:
            missing_settings.append(
                {
                    "name": "GitHub App ID",
                    "cli_name": "--github-app-id",
                    "env_name": "GITHUB_APP_ID",
                }
            )
        if not github_app_private_key_path:
            missing_settings.append(
                {
                    "name": "GitHub App private key path",
                    "cli_name": "--github-app-private-key-path",
                    "env_name": "GITHUB_APP_PRIVATE_KEY_PATH",
                }
            )
        msg = "Incomplete GitHub App configuration - missing settings include " + ", ".join(
            f"{setting['name']} (command line option {setting['cli_name']}, environment variable {setting['env_name']})"
            for setting in missing_settings
        )
        raise GitHubAuthenticationConfigurationUndefinedError(msg)

    if github_tokens and app_configured:
        return GitHubAuthenticationType.PAT_AND_APP
    if github_tokens:
        return GitHubAuthenticationType.PAT
    if app_configured:
        return GitHubAuthenticationType.APP
    raise GitHubAuthenticationConfigurationUndefinedError(
        "No GitHub authentication configuration provided. Please provide one or more tokens (GITHUB_TOKEN) and/or a GitHub App configuration."
    )


def parse_issue_repository_overrides(value: str | None) -> dict[int, list[PullRequestReference]]:
    """Parse a JSON object of issue number -> ["owner/repo#number", ...]."""
    if not value:
        return {}
    try:
        raw = json.loads(value)
    except json.JSONDecodeError as exc:
        raise InvalidConfigurationValueError("ISSUE_REPOSITORY_OVERRIDES", str(exc)) from exc
    if not isinstance(raw, dict):
        raise InvalidConfigurationValueError("ISSUE_REPOSITORY_OVERRIDES", "expected a JSON object keyed by issue number")

    overrides: dict[int, list[PullRequestReference]] = {}
    for issue_number, references in raw.items():
        if not str(issue_number).isdigit():
            raise InvalidConfigurationValueError("ISSUE_REPOSITORY_OVERRIDES", f"{issue_number!r} is not an issue number")
        if isinstance(references, str):
            references = [references]
        parsed: list[PullRequestReference] = []
        for reference in references:
            match = PULL_REQUEST_REFERENCE_PATTERN.match(str(reference).strip())
            if match is None:
                raise InvalidConfigurationValueError("ISSUE_REPOSITORY_OVERRIDES", f"{reference!r} is not in owner/repo#number form")
            parsed.append(PullRequestReference(owner=match.group("owner"), repo=match.group("repo"), number=int(match.group("number"))))
        overrides[int(issue_number)] = parsed
    return overrides


def parse_user_mapping_options(values: list[str] | None) -> dict[str, str]:
    """Parse repeated ``username=tracker_user_id`` CLI options."""
    mappings: dict[str, str] = {}
    for value in values or []:
        username, separator, user_id = value.partition("=")
        if not separator or not username.strip() or not user_id.strip():
            raise InvalidConfigurationValueError("--user-mapping", f"{value!r} is not in username=tracker_user_id form")
        mappings[username.strip()] = user_id.strip()
    return mappings


async def build_sync_configuration(
    repo: str | None,
    github_tokens: list[str],
    tracker_api_key: str | None,
    tracker_team_id: str | None,
    github_api_url: str = "https://api.github.com",
    github_web_host: str | None = None,
    github_app_id: str | None = None,
    github_app_private_key_path: Path | None = None,
    github_app_installation_id: str | None = None,
    tracker_api_url: str = "https://api.linear.app/graphql",
    database_path: Path = Path("ticket_sync.db"),
    organization_engineers: list[str] | None = None,
    organization_engineers_env: str | None = None,
    user_mappings: dict[str, str] | None = None,
    user_mappings_env: str | None = None,
    roster_path: Path | None = None,
    default_assignee_id: str | None = None,
    issue_repository_overrides: str | None = None,
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
    merged_lookback_days: int = DEFAULT_MERGED_LOOKBACK_DAYS,
    search_fallback: bool = True,
    dry_run: bool = False,
    debug: bool = False,
) -> SyncConfig:
    """Validate the combined settings and build the run configuration.

    Raises:
        RequiredConfigurationElementError: If the repository or tracker credentials are missing.
        GitHubAuthenticationConfigurationUndefinedError: If GitHub authentication is missing or incomplete.
        InvalidConfigurationValueError: If a setting cannot be parsed.
    """
    if not repo:
        raise RequiredConfigurationElementError(name="GitHub repository", cli_name="--repo", env_name="REPO")
    try:
        await split_repository_in_configuration(repo)
    except ValueError as exc:
        raise InvalidConfigurationValueError("REPO", str(exc)) from exc
    if not tracker_api_key:
        raise RequiredConfigurationElementError(name="Tracker API key", cli_name="--tracker-api-key", env_name="TRACKER_API_KEY")
    if not tracker_team_id:
        raise RequiredConfigurationElementError(name="Tracker team ID", cli_name="--tracker-team-id", env_name="TRACKER_TEAM_ID")
    if roster_path is not None and not roster_path.exists():
        raise InvalidConfigurationValueError("ROSTER_PATH", f"roster file not found: {roster_path.absolute()}")
    if concurrency_limit < 1:
        raise InvalidConfigurationValueError("--concurrency", "must be at least 1")

    github_authentication_type = await validate_github_authentication_configuration(
        github_tokens=github_tokens,
        github_app_id=github_app_id,
        github_app_private_key_path=github_app_private_key_path,
        github_app_installation_id=github_app_installation_id,
    )

    return SyncConfig(
        debug=debug,
        dry_run=dry_run,
        github_api_url=github_api_url,
        github_web_host=github_web_host or web_host_from_api_url(github_api_url),
        github_authentication_type=github_authentication_type,
        github_tokens=github_tokens,
        github_app_id=github_app_id,
        github_app_private_key_path=github_app_private_key_path,
        github_app_installation_id=github_app_installation_id,
        repo=repo,
        tracker_api_key=tracker_api_key,
        tracker_team_id=tracker_team_id,
        tracker_api_url=tracker_api_url,
        database_path=database_path,
        organization_engineers=list(organization_engineers or []),
        organization_engineers_env=organization_engineers_env,
        user_mappings=dict(user_mappings or {}),
        user_mappings_env=user_mappings_env,
        roster_path=roster_path,
        default_assignee_id=default_assignee_id,
        issue_repository_overrides=parse_issue_repository_overrides(issue_repository_overrides),
        concurrency_limit=concurrency_limit,
        merged_lookback_days=merged_lookback_days,
        search_fallback=search_fallback,
    )
