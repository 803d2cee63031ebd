"""Unit tests for the SQLite sync store."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from ticket_sync_manager.github.models import ExternalIssue, ExternalPR, IssueState
from ticket_sync_manager.storage.sqlite import SqliteSyncStore


def test_upsert_issue_keeps_existing_ticket_link(store: SqliteSyncStore, make_issue: Callable[..., ExternalIssue]) -> None:
    """Refreshing an issue from GitHub does not unlink it from its ticket."""
    store.upsert_issue(make_issue(1, ticket_id="t-1", assignees=["alice"]))

    # When
    store.upsert_issue(make_issue(1, state=IssueState.CLOSED))

    # Then
    issue = store.get_issue(1)
    assert issue is not None
    assert issue.ticket_id == "t-1"
    assert issue.ticket_identifier == "ENG-t-1"
    assert issue.state == IssueState.CLOSED
    assert issue.assignees == []


def test_list_linked_issues(store: SqliteSyncStore, make_issue: Callable[..., ExternalIssue]) -> None:
    store.upsert_issue(make_issue(3, ticket_id="t-3"))
    store.upsert_issue(make_issue(1, ticket_id="t-1", state=IssueState.CLOSED))
    store.upsert_issue(make_issue(2))

    assert [issue.number for issue in store.list_linked_issues()] == [1, 3]
    assert [issue.number for issue in store.list_linked_issues(open_only=True)] == [3]
    assert store.known_issue_numbers() == {1, 2, 3}


def test_link_ticket_creates_unknown_issue(store: SqliteSyncStore) -> None:
    store.link_ticket(42, "t-42", "ENG-42")

    issue = store.get_issue(42)
    assert issue is not None
    assert issue.ticket_id == "t-42"
    assert issue.state == IssueState.UNKNOWN


def test_record_tracker_status(store: SqliteSyncStore, make_issue: Callable[..., ExternalIssue]) -> None:
    store.upsert_issue(make_issue(1, ticket_id="t-1"))
    synced_at = datetime(2026, 10, 1, tzinfo=timezone.utc)
    checked_at = datetime(2026, 10, 2, tzinfo=timezone.utc)

    store.record_tracker_status([1], "In Progress", at=synced_at)
    store.record_tracker_status([1], None, checked_only=True, at=checked_at)

    issue = store.get_issue(1)
    assert issue is not None
    assert issue.tracker_status == "In Progress"
    assert issue.tracker_status_synced_at == synced_at
    assert issue.last_checked_at == checked_at


def test_pull_request_links_only_grow(store: SqliteSyncStore, make_pr: Callable[..., ExternalPR]) -> None:
    """Editing a PR body to drop a reference does not remove the stored link."""
    store.upsert_pull_request(make_pr(10, body="closes #1"), [1])

    # When
    store.upsert_pull_request(make_pr(10, state="closed", merged=True, body="closes #2"), [2])

    # Then
    assert store.linked_issue_numbers("https://github.com/acme/widgets/pull/10") == {1, 2}
    pull_requests = store.pull_requests_for_issue(1)
    assert [(pr.number, pr.merged, pr.body) for pr in pull_requests] == [(10, True, "closes #2")]


def test_file_database_persists(tmp_path: Path, make_issue: Callable[..., ExternalIssue]) -> None:
    db_path = tmp_path / "nested" / "sync.db"
    first = SqliteSyncStore(db_path)
    first.upsert_issue(make_issue(5, ticket_id="t-5"))
    first.close()

    second = SqliteSyncStore(db_path)
    assert second.known_issue_numbers() == {5}
    second.close()
