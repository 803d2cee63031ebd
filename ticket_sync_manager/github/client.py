# This file is intended to hold the setup for the authenticated githubkit clients.

"""Sets up the authenticated githubkit clients used by the token pool."""

from pathlib import Path

import structlog
from githubkit import GitHub
from githubkit.auth import AppAuthStrategy, TokenAuthStrategy

from ticket_sync_manager.utils.github import split_repository_in_configuration

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def get_github_token_client(github_token: str, github_api_url: str, timeout: float = 30.0) -> GitHub[TokenAuthStrategy]:
    """Returns a GitHub client authenticated with a single token.

    Automatic retries are disabled; rate limits are handled by rotating tokens
    in the pool instead.
    """
    if not github_token:
        raise RuntimeError("GitHub token authentication requires a non-empty token.")
    # Disable HTTP caching to always get fresh data
    return GitHub(
        auth=TokenAuthStrategy(github_token),
        base_url=github_api_url,
        http_cache=False,
        auto_retry=False,
        timeout=timeout,
    )


async def get_github_app_installation_token(
    repo: str,
    github_app_id: int | str,
    github_app_private_key_path: Path,
    github_app_installation_id: int | str | None,
    github_api_url: str,
) -> str:
    """Mints an installation access token for a GitHub App.

    The token joins the rotation pool as an ``app`` token. When no
    installation ID is configured, the installation for the repository is
    looked up.
    """
    if not (github_app_id and github_app_private_key_path):
        raise RuntimeError("GitHub App authentication requires app_id and private_key_path in config.")
    try:
        with open(github_app_private_key_path) as f:
            private_key = f.read()
        auth = AppAuthStrategy(app_id=github_app_id, private_key=private_key)
        app_client = GitHub(auth=auth, base_url=github_api_url, http_cache=False)

        if github_app_installation_id:
            installation_id = int(github_app_installation_id)
        else:
            owner, repository = await split_repository_in_configuration(repo=repo)
            resp = await app_client.rest.apps.async_get_repo_installation(owner=owner, repo=repository)
            installation_id = resp.parsed_data.id

        token_resp = await app_client.rest.apps.async_create_installation_access_token(installation_id=installation_id)
        logger.info("Minted GitHub App installation token", installation_id=installation_id)
        return token_resp.parsed_data.token
    except Exception as e:
        raise ValueError(f"Failed to get GitHub App installation token: {e}") from e
