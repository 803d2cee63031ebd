"""Completion sync: marks open tickets Done (or Review) from their issues and pull requests."""

from collections import defaultdict

import structlog

from ticket_sync_manager.github.adapter import GitHubRestAdapter
from ticket_sync_manager.github.exceptions import GITHUB_READ_ERRORS
from ticket_sync_manager.github.models import ExternalIssue, ExternalPR, IssueState
from ticket_sync_manager.references.extractor import extract_issue_urls, extract_pull_request_urls
from ticket_sync_manager.storage.abc import SyncStore
from ticket_sync_manager.synchronize.decisions import decide_completion
from ticket_sync_manager.synchronize.models import CompletionOutcome, SyncAction, evidence_for
from ticket_sync_manager.synchronize.pull_requests import PullRequestIndex, describe_decision, stored_merged_pull_requests, write_decision
from ticket_sync_manager.synchronize.types import ClosureConfirmationOracle
from ticket_sync_manager.tracker.abc import TicketWriter
from ticket_sync_manager.tracker.models import Ticket
from ticket_sync_manager.tracker.workflow_states import ResolvedWorkflowStates

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class CompletionSync:
    """Decides completion for the tracker's open tickets."""

    def __init__(
        self,
        tracker: TicketWriter,
        store: SyncStore,
        adapter: GitHubRestAdapter,
        states: ResolvedWorkflowStates,
        web_host: str = "github.com",
        index: PullRequestIndex | None = None,
        oracle: ClosureConfirmationOracle | None = None,
        dry_run: bool = False,
    ) -> None:
        self.tracker = tracker
        self.store = store
        self.adapter = adapter
        self.states = states
        self.web_host = web_host
        self.index = index
        self.oracle = oracle
        self.dry_run = dry_run
        self._issues_by_ticket: dict[str, set[int]] = defaultdict(set)
        for issue in store.list_linked_issues():
            if issue.ticket_id:
                self._issues_by_ticket[issue.ticket_id].add(issue.number)

    def linked_issue_numbers(self, ticket: Ticket) -> set[int]:
        """Issues linked in the store plus issue URLs of this repository in the ticket text."""
        from_text = extract_issue_urls(ticket.text, self.adapter.owner, self.adapter.repo_name, self.web_host)
        if from_text and not self.dry_run:
            for number in from_text - self._issues_by_ticket[ticket.id]:
                existing = self.store.get_issue(number)
                if existing is not None and existing.ticket_id is None:
                    self.store.link_ticket(number, ticket.id, ticket.identifier)
        return self._issues_by_ticket[ticket.id] | from_text

    async def _description_pull_requests(self, ticket: Ticket) -> list[ExternalPR]:
        pull_requests: list[ExternalPR] = []
        for link in extract_pull_request_urls(ticket.description, self.web_host):
            try:
                pull_request = await self.adapter.get_pull_request(link.number, owner=link.owner, repo=link.repo)
            except GITHUB_READ_ERRORS as exc:
                logger.warning("Could not fetch pull request from ticket description", url=link.url, error=str(exc))
                continue
            if pull_request is not None:
                pull_requests.append(pull_request)
        return pull_requests

    async def _waiting_for_confirmation(self, issues: list[ExternalIssue]) -> bool | None:
        if self.oracle is None:
            return None
        for issue in issues:
            if await self.oracle.is_waiting_for_confirmation(issue.number):
                return True
        return False

    async def sync_ticket(self, ticket: Ticket) -> CompletionOutcome:
        """Decide and apply completion for one open ticket."""
        numbers = sorted(self.linked_issue_numbers(ticket))
        issues = [self.store.get_issue(number) or ExternalIssue(number=number) for number in numbers]

        pull_requests = {pull_request.url: pull_request for pull_request in stored_merged_pull_requests(self.store, numbers)}
        pull_requests.update({pull_request.url: pull_request for pull_request in await self._description_pull_requests(ticket)})
        if self.index is not None:
            pull_requests.update({pull_request.url: pull_request for pull_request in self.index.for_issues(numbers)})

        open_issues = [issue for issue in issues if issue.state == IssueState.OPEN]
        waiting = None
        if open_issues and any(pull_request.merged for pull_request in pull_requests.values()):
            waiting = await self._waiting_for_confirmation(open_issues)

        decision = decide_completion(ticket, issues, pull_requests.values(), self.states, waiting_for_confirmation=waiting)
        outcome = CompletionOutcome(
            ticket_id=ticket.id,
            ticket_identifier=ticket.identifier,
            action=decision.action,
            reason=decision.reason,
            target_category=decision.target_category if decision.needs_write else None,
            issue_numbers=numbers,
            open_issue_numbers=[issue.number for issue in open_issues],
            pull_requests=evidence_for(pull_requests.values()),
            no_links=not numbers and not pull_requests,
        )
        if not decision.needs_write:
            return outcome

        if self.dry_run:
            logger.info("Dry run, not updating ticket", ticket=ticket.label, reason=decision.reason)
            return outcome.model_copy(update={"dry_run": True, "reason": f"[DRY RUN] Would {describe_decision(decision)}: {decision.reason}"})

        await write_decision(self.tracker, ticket, decision)
        if decision.target_category is not None:
            self.store.record_tracker_status(numbers, decision.target_category.value)
        logger.info("Updated ticket", ticket=ticket.label, reason=decision.reason)
        return outcome
