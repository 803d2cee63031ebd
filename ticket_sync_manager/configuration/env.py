"""Pydantic Settings model for application configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment variable settings for the application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Generic application-wide settings
    DEBUG: bool = False
    DRY_RUN: bool = False

    # GitHub API settings
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_WEB_HOST: str | None = None
    REPO: str | None = None

    # Comma-separated list of personal access tokens used for rotation
    GITHUB_TOKEN: str | None = None

    # GitHub App settings
    GITHUB_APP_ID: str | None = None
    GITHUB_APP_PRIVATE_KEY_PATH: Path | None = None
    GITHUB_APP_INSTALLATION_ID: str | None = None

    # Tracker settings
    TRACKER_API_KEY: str | None = None
    TRACKER_TEAM_ID: str | None = None
    TRACKER_API_URL: str = "https://api.linear.app/graphql"

    # Assignment settings
    ORGANIZATION_ENGINEERS: str | None = None
    USER_MAPPINGS: str | None = None
    ROSTER_PATH: Path | None = None
    DEFAULT_ASSIGNEE_ID: str | None = None

    # Local persistence
    DATABASE_PATH: Path = Path("ticket_sync.db")

    # JSON object of issue number -> ["owner/repo#pr", ...]
    ISSUE_REPOSITORY_OVERRIDES: str | None = None
