"""Base ABC for the local sync store."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from ticket_sync_manager.github.models import ExternalIssue, ExternalPR


class SyncStore(ABC):
    """Local record of GitHub issues, pull requests and their ticket links."""

    # Issues
    @abstractmethod
    def list_linked_issues(self, open_only: bool = False) -> list[ExternalIssue]:
        """List issues that are linked to a ticket."""
        pass

    @abstractmethod
    def get_issue(self, number: int) -> ExternalIssue | None:
        """Get an issue by number."""
        pass

    @abstractmethod
    def known_issue_numbers(self) -> set[int]:
        """Numbers of every issue in the store."""
        pass

    @abstractmethod
    def upsert_issue(self, issue: ExternalIssue) -> None:
        """Insert or refresh an issue, keeping an existing ticket link when the record carries none."""
        pass

    @abstractmethod
    def link_ticket(self, number: int, ticket_id: str, ticket_identifier: str | None = None) -> None:
        """Link an issue to a ticket, creating the issue record if needed."""
        pass

    @abstractmethod
    def record_tracker_status(self, numbers: Iterable[int], status: str | None, checked_only: bool = False, at: datetime | None = None) -> None:
        """Record the tracker status written for issues, or only the last-checked time."""
        pass

    # Pull requests
    @abstractmethod
    def upsert_pull_request(self, pull_request: ExternalPR, issue_numbers: Iterable[int]) -> None:
        """Insert or refresh a pull request keyed by URL and union its linked issues."""
        pass

    @abstractmethod
    def linked_issue_numbers(self, url: str) -> set[int]:
        """Issue numbers linked to a pull request URL."""
        pass

    @abstractmethod
    def pull_requests_for_issue(self, number: int) -> list[ExternalPR]:
        """Pull requests linked to an issue."""
        pass
