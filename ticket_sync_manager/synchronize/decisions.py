"""Decision functions for the pull request sync, completion sync and audit.

These functions only compute targets. Applying a decision (or skipping the
write in a dry run) is done by the callers.
"""

from typing import Iterable

from ticket_sync_manager.assignment.resolver import AssignmentResolver
from ticket_sync_manager.github.models import ExternalIssue, ExternalPR, IssueState
from ticket_sync_manager.synchronize.models import SyncAction, TicketSyncDecision
from ticket_sync_manager.tracker.models import Ticket
from ticket_sync_manager.tracker.workflow_states import ResolvedWorkflowStates, StateCategory


def _authors(pull_requests: Iterable[ExternalPR]) -> list[str]:
    """PR authors, oldest PR first, without duplicates."""
    authors: list[str] = []
    for pull_request in sorted(pull_requests, key=lambda pr: pr.number):
        if pull_request.author and pull_request.author not in authors:
            authors.append(pull_request.author)
    return authors


def _finalize(
    ticket: Ticket,
    states: ResolvedWorkflowStates,
    target_category: StateCategory | None,
    assignee: tuple[str, str] | None,
    reason: str,
) -> TicketSyncDecision:
    """Compare the target with the ticket's current state and assignee."""
    target_state = states.get(target_category) if target_category is not None else None
    state_changes = target_state is not None and target_state.id != ticket.state_id
    assignee_changes = assignee is not None and assignee[1] != ticket.assignee_id

    if not state_changes and not assignee_changes:
        current = ticket.state_name or ticket.state_id or "its current state"
        return TicketSyncDecision(
            action=SyncAction.UNCHANGED,
            reason=f"Already {current}" + (f" and assigned to {assignee[0]}" if assignee else ""),
            target_category=target_category,
        )

    return TicketSyncDecision(
        action=SyncAction.UPDATED,
        reason=reason,
        target_category=target_category if state_changes else None,
        target_state_id=target_state.id if state_changes and target_state else None,
        target_state_name=target_state.name if state_changes and target_state else None,
        assignee_id=assignee[1] if assignee_changes and assignee else None,
        assignee_username=assignee[0] if assignee_changes and assignee else None,
    )


def _unresolved_assignee(issue: ExternalIssue, pull_requests: Iterable[ExternalPR], description: str) -> TicketSyncDecision:
    candidates = [*issue.assignees, *(author for author in _authors(pull_requests) if author not in issue.assignees)]
    who = ", ".join(candidates) or "an unknown author"
    return TicketSyncDecision(action=SyncAction.UNCHANGED, reason=f"No tracker user for {who} on {description}, state left as is")


def decide_pull_request_sync(
    issue: ExternalIssue,
    ticket: Ticket,
    pull_requests: Iterable[ExternalPR],
    states: ResolvedWorkflowStates,
    resolver: AssignmentResolver,
) -> TicketSyncDecision:
    """Compute the ticket state and assignee implied by an issue's pull requests.

    Priority, first match wins: a merged pull request moves the ticket to
    Review (when the team has one), an open pull request moves it to In
    Progress, a resolvable GitHub assignee alone only sets the assignee.
    The issue's own GitHub assignee takes precedence over PR authors. When
    nobody resolves, for example a PR from an outside contributor, the ticket
    is left unchanged.
    """
    if issue.state == IssueState.CLOSED:
        return TicketSyncDecision(action=SyncAction.SKIPPED, reason="GitHub issue is closed")
    if states.is_closed(ticket.state_id, ticket.state_type):
        return TicketSyncDecision(action=SyncAction.SKIPPED, reason=f"Ticket is already {ticket.state_name or 'closed'}")

    pull_requests = list(pull_requests)
    merged = [pull_request for pull_request in pull_requests if pull_request.merged]
    open_ = [pull_request for pull_request in pull_requests if pull_request.is_open]
    issue_assignee = resolver.resolve_first(issue.assignees)

    if merged and states.review is not None:
        assignee = issue_assignee or resolver.resolve_first(_authors(merged))
        numbers = ", ".join(f"#{pull_request.number}" for pull_request in merged)
        if assignee is None:
            return _unresolved_assignee(issue, merged, f"merged PR {numbers}")
        return _finalize(ticket, states, StateCategory.REVIEW, assignee, f"Merged PR {numbers} -> {states.review.name}")

    if open_:
        assignee = issue_assignee or resolver.resolve_first(_authors(open_))
        numbers = ", ".join(f"#{pull_request.number}" for pull_request in open_)
        if assignee is None:
            return _unresolved_assignee(issue, open_, f"open PR {numbers}")
        return _finalize(ticket, states, StateCategory.IN_PROGRESS, assignee, f"Open PR {numbers} -> {states.in_progress.name}")

    if issue_assignee is not None:
        return _finalize(ticket, states, None, issue_assignee, f"Assign to {issue_assignee[0]} from the GitHub issue")

    return TicketSyncDecision(action=SyncAction.UNCHANGED, reason="No open or merged PRs found")


def decide_completion(
    ticket: Ticket,
    issues: Iterable[ExternalIssue],
    pull_requests: Iterable[ExternalPR],
    states: ResolvedWorkflowStates,
    waiting_for_confirmation: bool | None = None,
) -> TicketSyncDecision:
    """Decide whether an open ticket is done.

    Done when every linked issue is closed, or when a pull request is merged
    and no linked issue is left open. A merged pull request whose issue is
    still open goes to Review while ``waiting_for_confirmation`` is true or
    unknown (None), and to Done when it is false.
    """
    issues = list(issues)
    pull_requests = list(pull_requests)
    if not issues and not pull_requests:
        return TicketSyncDecision(action=SyncAction.SKIPPED, reason="No linked GitHub issues or pull requests")

    open_issues = [issue for issue in issues if issue.state == IssueState.OPEN]
    unknown_issues = [issue for issue in issues if issue.state == IssueState.UNKNOWN]
    merged = [pull_request for pull_request in pull_requests if pull_request.merged]

    if issues and not open_issues and not unknown_issues:
        return _finalize(ticket, states, StateCategory.DONE, None, f"All {len(issues)} linked issues closed")

    if merged and not open_issues and not unknown_issues:
        return _finalize(ticket, states, StateCategory.DONE, None, f"{len(merged)} PR(s) merged")

    if merged and open_issues:
        numbers = ", ".join(f"#{issue.number}" for issue in open_issues)
        if waiting_for_confirmation is False:
            return _finalize(ticket, states, StateCategory.DONE, None, f"PR merged and issue {numbers} is not waiting for confirmation")
        if states.review is not None:
            return _finalize(ticket, states, StateCategory.REVIEW, None, f"PR merged, waiting for issue {numbers} to be confirmed closed")
        return TicketSyncDecision(action=SyncAction.UNCHANGED, reason=f"PR merged but issue {numbers} is still open")

    if unknown_issues and not open_issues:
        numbers = ", ".join(f"#{issue.number}" for issue in unknown_issues)
        return TicketSyncDecision(action=SyncAction.UNCHANGED, reason=f"State of issue {numbers} is unknown")

    return TicketSyncDecision(action=SyncAction.UNCHANGED, reason=f"{len(open_issues)}/{len(issues)} issues still open")


def pull_request_justification(
    category: StateCategory,
    issues: Iterable[ExternalIssue],
    pull_requests: Iterable[ExternalPR],
) -> tuple[bool, str]:
    """Check whether pull requests still justify an elevated ticket state.

    In Progress needs an open pull request. Review needs a merged pull request
    with a linked issue still open; a merged pull request whose issues are all
    closed is left for the completion sync. An issue of unknown state never
    causes a Review ticket with a merged pull request to be reverted.
    """
    issues = list(issues)
    pull_requests = list(pull_requests)
    if category == StateCategory.IN_PROGRESS:
        open_ = [pull_request for pull_request in pull_requests if pull_request.is_open]
        if open_:
            return True, f"Open PR #{open_[0].number}"
        return False, "No open PR for linked issues"

    if category == StateCategory.REVIEW:
        merged = [pull_request for pull_request in pull_requests if pull_request.merged]
        if not merged:
            return False, "No merged PR for linked issues"
        if any(issue.state == IssueState.OPEN for issue in issues):
            return True, f"Merged PR #{merged[0].number} with an open issue"
        if issues and all(issue.state == IssueState.CLOSED for issue in issues):
            return True, f"Merged PR #{merged[0].number} and all issues closed, pending completion"
        if any(issue.state == IssueState.UNKNOWN for issue in issues):
            return True, f"Merged PR #{merged[0].number}, issue state unknown"
        return False, "Merged PR but no linked issue is open"

    return True, "Not an elevated state"
