"""Loading of the organization engineer roster and username mappings."""

import json
from pathlib import Path
from typing import Any, Iterable

import structlog
from pydantic import BaseModel, ValidationError

from ticket_sync_manager.configuration.exceptions import InvalidConfigurationValueError
from ticket_sync_manager.tracker.models import TrackerUser
from ticket_sync_manager.utils.yaml import load_yaml_file

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class RosterEntry(BaseModel):
    """One engineer in the roster file."""

    github: str
    tracker_user_id: str | None = None
    email: str | None = None


def load_roster(path: Path) -> list[RosterEntry]:
    """Load the roster YAML file.

    The file is either a list of entries or a mapping with an ``engineers``
    key holding that list.
    """
    if not path.exists():
        raise FileNotFoundError(f"Roster file not found: {path.absolute()}")
    content = load_yaml_file(path)
    if isinstance(content, dict):
        content = content.get("engineers")
    if content is None:
        return []
    if not isinstance(content, list):
        raise InvalidConfigurationValueError("ROSTER_PATH", f"{path} must contain a list of engineers")
    try:
        entries = [RosterEntry.model_validate(entry) for entry in content]
    except ValidationError as exc:
        raise InvalidConfigurationValueError("ROSTER_PATH", str(exc)) from exc
    logger.info("Loaded engineer roster", path=str(path), engineers=len(entries))
    return entries


def _parse_env_list(value: str) -> list[str]:
    """Parse a JSON array, falling back to a comma-separated list."""
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return value.split(",")
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    raise InvalidConfigurationValueError("ORGANIZATION_ENGINEERS", "expected a JSON array or a comma-separated list")


def parse_organization_engineers(
    explicit: Iterable[str] | None = None,
    roster: Iterable[RosterEntry] | None = None,
    env_value: str | None = None,
) -> set[str]:
    """Build the lowercased allow-list from the first source that yields any names.

    Sources are tried in order: explicit list, roster, environment value.
    """
    sources: list[tuple[str, list[str]]] = [
        ("explicit", list(explicit or [])),
        ("roster", [entry.github for entry in roster or []]),
        ("environment", _parse_env_list(env_value) if env_value else []),
    ]
    for source, names in sources:
        engineers = {name.strip().lower() for name in names if name and name.strip()}
        if engineers:
            logger.info("Loaded organization engineers", source=source, count=len(engineers))
            return engineers
    logger.warning("No organization engineers configured, automatic assignment is disabled")
    return set()


def _parse_env_mappings(value: str) -> dict[str, str]:
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError as exc:
        raise InvalidConfigurationValueError("USER_MAPPINGS", str(exc)) from exc
    if isinstance(parsed, dict):
        return {str(username): str(user_id) for username, user_id in parsed.items()}
    if not isinstance(parsed, list):
        raise InvalidConfigurationValueError("USER_MAPPINGS", "expected a JSON array of {github_username, tracker_user_id}")
    mappings: dict[str, str] = {}
    for item in parsed:
        if not isinstance(item, dict) or "github_username" not in item or "tracker_user_id" not in item:
            raise InvalidConfigurationValueError("USER_MAPPINGS", f"malformed entry {item!r}")
        mappings[str(item["github_username"])] = str(item["tracker_user_id"])
    return mappings


def parse_user_mappings(
    explicit: dict[str, str] | None = None,
    roster: Iterable[RosterEntry] | None = None,
    env_value: str | None = None,
) -> dict[str, str]:
    """Build the lowercased username -> tracker user id mapping.

    Like the allow-list, the first source that yields any mapping wins.
    """
    sources: list[tuple[str, dict[str, str]]] = [
        ("explicit", dict(explicit or {})),
        ("roster", {entry.github: entry.tracker_user_id for entry in roster or [] if entry.tracker_user_id}),
        ("environment", _parse_env_mappings(env_value) if env_value else {}),
    ]
    for source, mapping in sources:
        if mapping:
            logger.info("Loaded user mappings", source=source, count=len(mapping))
            return {username.strip().lower(): user_id for username, user_id in mapping.items()}
    return {}


def auto_build_mappings(roster: Iterable[RosterEntry], tracker_users: Iterable[TrackerUser]) -> dict[str, str]:
    """Map roster usernames to tracker users by matching email addresses."""
    by_email = {user.email.lower(): user.id for user in tracker_users if user.email}
    mappings: dict[str, str] = {}
    for entry in roster:
        if not entry.email:
            continue
        user_id = by_email.get(entry.email.lower())
        if user_id is None:
            logger.warning("No tracker user for roster email", github_username=entry.github)
            continue
        mappings[entry.github.lower()] = user_id
        logger.debug("Auto-mapped engineer", github_username=entry.github, tracker_user_id=user_id)
    return mappings
