"""Unit tests for the audit of elevated tickets."""

from typing import Any, Callable

import pytest

from ticket_sync_manager.github.models import ExternalIssue, ExternalPR, IssueState
from ticket_sync_manager.storage.sqlite import SqliteSyncStore
from ticket_sync_manager.synchronize.audit import AuditReconciler
from ticket_sync_manager.synchronize.models import SyncAction
from ticket_sync_manager.synchronize.pull_requests import PullRequestIndex
from ticket_sync_manager.tracker.models import Ticket
from ticket_sync_manager.tracker.workflow_states import ResolvedWorkflowStates, StateCategory


@pytest.mark.asyncio
async def test_review_without_merged_pr_is_reverted(
    tracker: Any,
    store: SqliteSyncStore,
    states: ResolvedWorkflowStates,
    make_issue: Callable[..., ExternalIssue],
    make_ticket: Callable[..., Ticket],
    make_pr: Callable[..., ExternalPR],
) -> None:
    """A Review ticket whose only PR is open goes back to the backlog with no assignee."""
    tracker.add(make_ticket("t-1", state_id="state-review", assignee_id="user-alice"))
    store.upsert_issue(make_issue(1, "t-1"))
    index = PullRequestIndex()
    index.add(make_pr(10), [1])

    summary = await AuditReconciler(tracker, store, index, states).audit_and_fix()

    outcome = summary.outcomes[0]
    assert outcome.action == SyncAction.UPDATED
    assert outcome.fixed
    assert not outcome.justified
    assert outcome.previous_category == StateCategory.REVIEW
    assert outcome.reason == "No merged PR for linked issues, reverting In Review -> Todo and clearing the assignee"
    assert tracker.tickets["t-1"].state_id == "state-todo"
    assert tracker.tickets["t-1"].assignee_id is None
    assert tracker.updates == [{"ticket_id": "t-1", "state_id": "state-todo", "assignee_id": None, "clear_assignee": True}]
    assert summary.reverted == 1
    stored = store.get_issue(1)
    assert stored is not None and stored.tracker_status == "backlog"


@pytest.mark.asyncio
async def test_justified_tickets_are_left_alone(
    tracker: Any,
    store: SqliteSyncStore,
    states: ResolvedWorkflowStates,
    make_issue: Callable[..., ExternalIssue],
    make_ticket: Callable[..., Ticket],
    make_pr: Callable[..., ExternalPR],
) -> None:
    tracker.add(make_ticket("t-1", state_id="state-in-progress"))
    tracker.add(make_ticket("t-2", state_id="state-review"))
    tracker.add(make_ticket("t-3"))
    store.upsert_issue(make_issue(1, "t-1"))
    store.upsert_issue(make_issue(2, "t-2"))
    store.upsert_issue(make_issue(3, "t-3"))
    index = PullRequestIndex()
    index.add(make_pr(10), [1])
    index.add(make_pr(11, state="closed", merged=True), [2])

    summary = await AuditReconciler(tracker, store, index, states).audit_and_fix()

    assert summary.checked == 3
    assert summary.elevated == 2
    assert summary.justified == 2
    assert summary.reverted == 0
    assert tracker.updates == []


@pytest.mark.asyncio
async def test_review_justified_by_merged_pr_in_description(
    tracker: Any,
    store: SqliteSyncStore,
    github_adapter: Any,
    states: ResolvedWorkflowStates,
    make_issue: Callable[..., ExternalIssue],
    make_ticket: Callable[..., Ticket],
    make_pr: Callable[..., ExternalPR],
) -> None:
    github_adapter.add_pull_request(make_pr(30, state="closed", merged=True))
    tracker.add(make_ticket("t-1", state_id="state-review", description="https://github.com/acme/widgets/pull/30"))
    issue = make_issue(1, "t-1")
    store.upsert_issue(issue)

    outcome = await AuditReconciler(tracker, store, PullRequestIndex(), states, adapter=github_adapter).audit_ticket("t-1", [issue])

    assert outcome is not None
    assert outcome.justified
    assert outcome.action == SyncAction.UNCHANGED


@pytest.mark.asyncio
async def test_dry_run_reports_without_writing(
    tracker: Any,
    store: SqliteSyncStore,
    states: ResolvedWorkflowStates,
    make_issue: Callable[..., ExternalIssue],
    make_ticket: Callable[..., Ticket],
) -> None:
    tracker.add(make_ticket("t-1", state_id="state-in-progress", assignee_id="user-bob"))

    outcome = await AuditReconciler(tracker, store, PullRequestIndex(), states).audit_ticket("t-1", [make_issue(1, "t-1")], dry_run=True)

    assert outcome is not None
    assert outcome.action == SyncAction.UPDATED
    assert outcome.dry_run
    assert not outcome.fixed
    assert outcome.reason.startswith("[DRY RUN] Would revert: No open PR for linked issues")
    assert tracker.updates == []


@pytest.mark.asyncio
async def test_tracker_failure_is_recorded_as_error(
    tracker: Any,
    store: SqliteSyncStore,
    states: ResolvedWorkflowStates,
    make_issue: Callable[..., ExternalIssue],
    make_ticket: Callable[..., Ticket],
) -> None:
    tracker.add(make_ticket("t-1", state_id="state-in-progress"))
    tracker.add(make_ticket("t-2", state_id="state-in-progress"))
    store.upsert_issue(make_issue(1, "t-1"))
    store.upsert_issue(make_issue(2, "t-2", state=IssueState.CLOSED))
    tracker.fail_for.add("t-1")

    summary = await AuditReconciler(tracker, store, PullRequestIndex(), states).audit_and_fix()

    assert summary.errors == 1
    assert summary.reverted == 1
    errored = next(outcome for outcome in summary.outcomes if outcome.action == SyncAction.ERROR)
    assert errored.ticket_id == "t-1"
    assert "tracker unavailable" in errored.reason


@pytest.mark.asyncio
async def test_review_justified_by_stored_merged_pr(
    tracker: Any,
    store: SqliteSyncStore,
    states: ResolvedWorkflowStates,
    make_issue: Callable[..., ExternalIssue],
    make_ticket: Callable[..., Ticket],
    make_pr: Callable[..., ExternalPR],
) -> None:
    """A merged PR that has left the fetch window still justifies Review."""
    tracker.add(make_ticket("t-1", state_id="state-review", assignee_id="user-alice"))
    store.upsert_issue(make_issue(1, "t-1"))
    store.upsert_pull_request(make_pr(10, state="closed", merged=True), [1])

    summary = await AuditReconciler(tracker, store, PullRequestIndex(), states).audit_and_fix()

    assert summary.justified == 1
    assert summary.reverted == 0
    assert summary.outcomes[0].reason == "Merged PR #10 with an open issue"
    assert tracker.updates == []
    assert tracker.tickets["t-1"].assignee_id == "user-alice"


@pytest.mark.asyncio
async def test_stored_open_pr_does_not_justify_in_progress(
    tracker: Any,
    store: SqliteSyncStore,
    states: ResolvedWorkflowStates,
    make_issue: Callable[..., ExternalIssue],
    make_ticket: Callable[..., Ticket],
    make_pr: Callable[..., ExternalPR],
) -> None:
    """Open PRs are only trusted from the live index, since a stored one may have been closed since."""
    tracker.add(make_ticket("t-1", state_id="state-in-progress"))
    store.upsert_issue(make_issue(1, "t-1"))
    store.upsert_pull_request(make_pr(10), [1])

    summary = await AuditReconciler(tracker, store, PullRequestIndex(), states).audit_and_fix()

    assert summary.reverted == 1


@pytest.mark.asyncio
async def test_unlinked_elevated_ticket_is_audited(
    tracker: Any,
    store: SqliteSyncStore,
    states: ResolvedWorkflowStates,
    make_ticket: Callable[..., Ticket],
) -> None:
    """A ticket moved to In Progress by hand, with nothing linked, is reverted."""
    tracker.add(make_ticket("t-9", state_id="state-in-progress", assignee_id="user-bob"))

    summary = await AuditReconciler(tracker, store, PullRequestIndex(), states).audit_and_fix()

    assert summary.checked == 1
    assert summary.elevated == 1
    assert summary.reverted == 1
    assert tracker.tickets["t-9"].state_id == "state-todo"
    assert tracker.tickets["t-9"].assignee_id is None


@pytest.mark.asyncio
async def test_issue_url_in_description_counts_as_link(
    tracker: Any,
    store: SqliteSyncStore,
    github_adapter: Any,
    states: ResolvedWorkflowStates,
    make_ticket: Callable[..., Ticket],
    make_pr: Callable[..., ExternalPR],
) -> None:
    tracker.add(make_ticket("t-1", state_id="state-in-progress", description="Fixes https://github.com/acme/widgets/issues/7"))
    index = PullRequestIndex()
    index.add(make_pr(10), [7])

    summary = await AuditReconciler(tracker, store, index, states, adapter=github_adapter).audit_and_fix()

    outcome = summary.outcomes[0]
    assert outcome.issue_numbers == [7]
    assert outcome.justified
    assert tracker.updates == []


@pytest.mark.asyncio
async def test_review_with_unknown_issue_state_is_kept(
    tracker: Any,
    store: SqliteSyncStore,
    github_adapter: Any,
    states: ResolvedWorkflowStates,
    make_ticket: Callable[..., Ticket],
    make_pr: Callable[..., ExternalPR],
) -> None:
    """An issue linked only from the description and missing from the store has an unknown state."""
    tracker.add(make_ticket("t-1", state_id="state-review", description="https://github.com/acme/widgets/issues/7"))
    index = PullRequestIndex()
    index.add(make_pr(10, state="closed", merged=True), [7])

    summary = await AuditReconciler(tracker, store, index, states, adapter=github_adapter).audit_and_fix()

    assert summary.justified == 1
    assert tracker.updates == []
