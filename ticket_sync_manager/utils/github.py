"""Contains utility functions for GitHub interactions."""


async def split_repository_in_configuration(repo: str | None) -> tuple[str, str]:
    """Splits the repository in the configuration into owner and repository."""
    if repo is None:
        raise ValueError("A repository in 'owner/repo' format is required.")
    repo = repo.strip("/")
    parts = repo.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError("Repository must be in the format 'owner/repo' with no leading/trailing slashes or extra parts.")
    owner, repository = parts
    return owner, repository


def web_host_from_api_url(github_api_url: str) -> str:
    """Derive the web host that issue URLs use from the API URL.

    e.g., "https://api.github.com" -> "github.com"
    or "https://github.example.com/api/v3" -> "github.example.com"
    """
    if "api.github.com" in github_api_url:
        return "github.com"
    host = github_api_url.split("://", 1)[-1]
    return host.split("/", 1)[0]
