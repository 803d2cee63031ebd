"""Pydantic models for the GitHub issues and pull requests the sync reasons about."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class IssueState(str, Enum):
    """State of a GitHub issue as known locally."""

    OPEN = "open"
    CLOSED = "closed"
    UNKNOWN = "unknown"


class ExternalIssue(BaseModel):
    """A GitHub issue and the tracker ticket it is linked to."""

    number: int
    title: str = ""
    state: IssueState = IssueState.UNKNOWN
    assignees: list[str] = Field(default_factory=list)
    ticket_id: str | None = None
    ticket_identifier: str | None = None
    updated_at: datetime | None = None
    is_pull_request: bool = False
    tracker_status: str | None = None
    tracker_status_synced_at: datetime | None = None
    last_checked_at: datetime | None = None

    @classmethod
    def from_github(cls, issue: Any) -> "ExternalIssue":
        """Build from a githubkit issue object."""
        state = str(getattr(issue, "state", "") or "").lower()
        return cls(
            number=issue.number,
            title=getattr(issue, "title", "") or "",
            state=IssueState(state) if state in ("open", "closed") else IssueState.UNKNOWN,
            assignees=[assignee.login for assignee in (getattr(issue, "assignees", None) or []) if getattr(assignee, "login", None)],
            updated_at=getattr(issue, "updated_at", None),
            is_pull_request=getattr(issue, "pull_request", None) is not None,
        )


class ExternalPR(BaseModel):
    """A GitHub pull request."""

    number: int
    url: str
    title: str = ""
    body: str | None = None
    state: str = "open"
    merged: bool = False
    author: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    head_ref: str | None = None
    base_ref: str | None = None

    @property
    def is_open(self) -> bool:
        """Open and not merged."""
        return self.state == "open" and not self.merged

    @property
    def text(self) -> str:
        """Title and body joined, as scanned for issue references."""
        return f"{self.title or ''}\n{self.body or ''}"

    @classmethod
    def from_github(cls, pull_request: Any) -> "ExternalPR":
        """Build from a githubkit pull request object.

        Listing endpoints return ``PullRequestSimple`` which has no ``merged``
        flag, so ``merged_at`` is used as a fallback.
        """
        merged = getattr(pull_request, "merged", None)
        if not isinstance(merged, bool):
            merged = getattr(pull_request, "merged_at", None) is not None
        user = getattr(pull_request, "user", None)
        head = getattr(pull_request, "head", None)
        base = getattr(pull_request, "base", None)
        return cls(
            number=pull_request.number,
            url=pull_request.html_url,
            title=getattr(pull_request, "title", "") or "",
            body=getattr(pull_request, "body", None),
            state=str(getattr(pull_request, "state", "open")),
            merged=merged,
            author=getattr(user, "login", "") or "",
            created_at=getattr(pull_request, "created_at", None),
            updated_at=getattr(pull_request, "updated_at", None),
            head_ref=getattr(head, "ref", None),
            base_ref=getattr(base, "ref", None),
        )
