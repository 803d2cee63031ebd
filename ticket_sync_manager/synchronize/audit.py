"""Audit of elevated tickets, reverting those whose state is no longer justified."""

from collections import defaultdict
from typing import Mapping

import structlog
from structlog.contextvars import bound_contextvars

from ticket_sync_manager.github.adapter import GitHubRestAdapter
from ticket_sync_manager.github.exceptions import GITHUB_READ_ERRORS
from ticket_sync_manager.github.models import ExternalIssue, ExternalPR
from ticket_sync_manager.references.extractor import extract_issue_urls, extract_pull_request_urls
from ticket_sync_manager.storage.abc import SyncStore
from ticket_sync_manager.synchronize.decisions import pull_request_justification
from ticket_sync_manager.synchronize.models import AuditOutcome, AuditSummary, SyncAction, evidence_for
from ticket_sync_manager.synchronize.pull_requests import PullRequestIndex, stored_merged_pull_requests
from ticket_sync_manager.synchronize.utils import process_in_batches
from ticket_sync_manager.tracker.abc import OpenTicketLister, TicketReader, TicketWriter
from ticket_sync_manager.tracker.models import Ticket
from ticket_sync_manager.tracker.workflow_states import ResolvedWorkflowStates, StateCategory
from ticket_sync_manager.utils.constants import DEFAULT_CONCURRENCY_LIMIT

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ELEVATED_CATEGORIES = (StateCategory.IN_PROGRESS, StateCategory.REVIEW)


class AuditReconciler:
    """Re-verifies open tickets in In Progress or Review against their pull requests.

    Evidence is the pull request index, merged pull requests already in the
    store, and for Review tickets the pull requests linked in the description.

    An unjustified ticket is moved back to the backlog state and its assignee
    is cleared.
    """

    def __init__(
        self,
        tracker: TicketReader,
        store: SyncStore,
        index: PullRequestIndex,
        states: ResolvedWorkflowStates,
        adapter: GitHubRestAdapter | None = None,
        web_host: str = "github.com",
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
    ) -> None:
        if not isinstance(tracker, TicketWriter):
            raise TypeError("The audit needs a tracker client that can write tickets")
        if not isinstance(tracker, OpenTicketLister):
            raise TypeError("The audit needs a tracker client that can list open tickets")
        self.tracker = tracker
        self.store = store
        self.index = index
        self.states = states
        self.adapter = adapter
        self.web_host = web_host
        self.concurrency_limit = concurrency_limit

    async def _description_pull_requests(self, description: str | None) -> list[ExternalPR]:
        """Merged state of pull requests linked in the ticket description."""
        if self.adapter is None:
            return []
        pull_requests: list[ExternalPR] = []
        for link in extract_pull_request_urls(description, self.web_host):
            try:
                pull_request = await self.adapter.get_pull_request(link.number, owner=link.owner, repo=link.repo)
            except GITHUB_READ_ERRORS as exc:
                logger.warning("Could not fetch pull request from ticket description", url=link.url, error=str(exc))
                continue
            if pull_request is not None:
                pull_requests.append(pull_request)
        return pull_requests

    async def audit_ticket(self, ticket_id: str, issues: list[ExternalIssue], dry_run: bool = False) -> AuditOutcome | None:
        """Audit one ticket. Returns None when the ticket is not in an elevated state."""
        numbers = sorted(issue.number for issue in issues)
        ticket = await self.tracker.get_ticket(ticket_id)
        if ticket is None:
            return AuditOutcome(ticket_id=ticket_id, action=SyncAction.SKIPPED, reason="Ticket not found in tracker", issue_numbers=numbers)

        category = self.states.category_of(ticket.state_id, ticket.state_type)
        if category not in ELEVATED_CATEGORIES:
            return None

        pull_requests = {pull_request.url: pull_request for pull_request in stored_merged_pull_requests(self.store, numbers)}
        pull_requests.update({pull_request.url: pull_request for pull_request in self.index.for_issues(numbers)})
        if category == StateCategory.REVIEW:
            for pull_request in await self._description_pull_requests(ticket.description):
                pull_requests.setdefault(pull_request.url, pull_request)

        justified, reason = pull_request_justification(category, issues, pull_requests.values())
        outcome = AuditOutcome(
            ticket_id=ticket.id,
            ticket_identifier=ticket.identifier,
            action=SyncAction.UNCHANGED,
            reason=reason,
            previous_state=ticket.state_name,
            previous_category=category,
            justified=justified,
            issue_numbers=numbers,
            pull_requests=evidence_for(pull_requests.values()),
        )
        if justified:
            return outcome

        backlog = self.states.backlog
        revert_reason = f"{reason}, reverting {ticket.state_name} -> {backlog.name} and clearing the assignee"
        if dry_run:
            logger.info("Dry run, not reverting ticket", ticket=ticket.label, reason=reason)
            return outcome.model_copy(update={"action": SyncAction.UPDATED, "dry_run": True, "reason": f"[DRY RUN] Would revert: {revert_reason}"})

        await self.tracker.update_ticket(ticket.id, state_id=backlog.id, clear_assignee=True)
        self.store.record_tracker_status(numbers, StateCategory.BACKLOG.value)
        logger.warning("Reverted unjustified ticket", ticket=ticket.label, previous_state=ticket.state_name, reason=reason)
        return outcome.model_copy(update={"action": SyncAction.UPDATED, "fixed": True, "reason": revert_reason})

    def _linked_issues(self, ticket: Ticket, issues_by_ticket: Mapping[str, list[ExternalIssue]]) -> list[ExternalIssue]:
        """Issues linked in the store plus issue URLs of this repository in the ticket text."""
        issues = {issue.number: issue for issue in issues_by_ticket.get(ticket.id, [])}
        if self.adapter is not None:
            for number in extract_issue_urls(ticket.text, self.adapter.owner, self.adapter.repo_name, self.web_host):
                if number not in issues:
                    issues[number] = self.store.get_issue(number) or ExternalIssue(number=number)
        return [issues[number] for number in sorted(issues)]

    async def audit_and_fix(self, dry_run: bool = False) -> AuditSummary:
        """Audit every open ticket that is in In Progress or Review."""
        issues_by_ticket: dict[str, list[ExternalIssue]] = defaultdict(list)
        for issue in self.store.list_linked_issues():
            if issue.ticket_id:
                issues_by_ticket[issue.ticket_id].append(issue)

        open_tickets = await self.tracker.list_open_tickets()
        elevated = [ticket for ticket in open_tickets if self.states.category_of(ticket.state_id, ticket.state_type) in ELEVATED_CATEGORIES]

        async def process(ticket: Ticket) -> AuditOutcome | None:
            issues = self._linked_issues(ticket, issues_by_ticket)
            with bound_contextvars(ticket=ticket.label):
                try:
                    return await self.audit_ticket(ticket.id, issues, dry_run=dry_run)
                except Exception as exc:
                    logger.error("Failed to audit ticket", error=str(exc))
                    return AuditOutcome(
                        ticket_id=ticket.id,
                        ticket_identifier=ticket.identifier,
                        action=SyncAction.ERROR,
                        reason=str(exc),
                        dry_run=dry_run,
                        issue_numbers=[issue.number for issue in issues],
                    )

        results = await process_in_batches(elevated, process, self.concurrency_limit)
        outcomes = [outcome for outcome in results if outcome is not None]
        summary = AuditSummary.from_outcomes(outcomes, checked=len(open_tickets), dry_run=dry_run)
        logger.info(
            "Audit complete",
            checked=summary.checked,
            elevated=summary.elevated,
            justified=summary.justified,
            reverted=summary.reverted,
            errors=summary.errors,
        )
        return summary
