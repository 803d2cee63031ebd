"""Resolution of GitHub usernames to tracker user ids."""

from typing import Iterable, Mapping

import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def resolve_tracker_user_id(
    username: str | None,
    mappings: Mapping[str, str],
    allow_list: Iterable[str],
    default_assignee_id: str | None = None,
) -> str | None:
    """Resolve one username to a tracker user id.

    A username outside the allow-list is never assigned, even when a mapping
    exists for it. Allow-listed users use their mapping, else the default.
    """
    if not username:
        return None
    key = username.strip().lower()
    if key not in {name.lower() for name in allow_list}:
        return None
    lowered = {name.lower(): user_id for name, user_id in mappings.items()}
    if key in lowered:
        return lowered[key]
    return default_assignee_id


class AssignmentResolver:
    """Holds the allow-list and mappings for a run."""

    def __init__(
        self,
        organization_engineers: Iterable[str],
        user_mappings: Mapping[str, str] | None = None,
        default_assignee_id: str | None = None,
    ) -> None:
        self.organization_engineers = {name.strip().lower() for name in organization_engineers if name}
        self.user_mappings = {name.strip().lower(): user_id for name, user_id in (user_mappings or {}).items()}
        self.default_assignee_id = default_assignee_id

    def is_engineer(self, username: str | None) -> bool:
        """Whether the username is on the organization allow-list."""
        return bool(username) and username.strip().lower() in self.organization_engineers  # type: ignore[union-attr]

    def resolve(self, username: str | None) -> str | None:
        """Resolve a single username, see ``resolve_tracker_user_id``."""
        return resolve_tracker_user_id(username, self.user_mappings, self.organization_engineers, self.default_assignee_id)

    def resolve_first(self, usernames: Iterable[str]) -> tuple[str, str] | None:
        """Pick one assignee from several candidates.

        The first allow-listed username with an explicit mapping wins; failing
        that, the first username that resolves at all (via the default). The
        remaining candidates are dropped since a ticket has one assignee.

        Returns:
            ``(username, tracker_user_id)`` or None.
        """
        candidates = [username for username in usernames if username]
        for username in candidates:
            if self.is_engineer(username) and username.strip().lower() in self.user_mappings:
                return username, self.user_mappings[username.strip().lower()]
        for username in candidates:
            user_id = self.resolve(username)
            if user_id is not None:
                return username, user_id
        if candidates:
            logger.debug("No candidate resolved to a tracker user", candidates=candidates)
        return None

    def explain(self, username: str | None) -> str:
        """Describe how a username resolves, for outcome reasons."""
        if not username:
            return "no username"
        if not self.is_engineer(username):
            return f"{username} is not an organization engineer"
        if username.strip().lower() in self.user_mappings:
            return f"{username} is mapped to {self.user_mappings[username.strip().lower()]}"
        if self.default_assignee_id:
            return f"{username} is unmapped, using the default assignee"
        return f"{username} is unmapped and no default assignee is configured"
