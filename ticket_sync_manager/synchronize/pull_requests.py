"""Pull request driven ticket sync.

Builds the issue -> pull request index from the live API and moves each
linked ticket to the state its pull requests imply.
"""

from typing import Iterable, Mapping

import structlog

from ticket_sync_manager.assignment.resolver import AssignmentResolver
from ticket_sync_manager.configuration.models import PullRequestReference
from ticket_sync_manager.github.adapter import GitHubRestAdapter
from ticket_sync_manager.github.exceptions import GITHUB_READ_ERRORS
from ticket_sync_manager.github.fetcher import PagedFetcher
from ticket_sync_manager.github.models import ExternalIssue, ExternalPR, IssueState
from ticket_sync_manager.references.extractor import ReferenceExtractor
from ticket_sync_manager.storage.abc import SyncStore
from ticket_sync_manager.synchronize.decisions import decide_pull_request_sync
from ticket_sync_manager.synchronize.models import SyncAction, SyncOutcome, TicketSyncDecision, evidence_for
from ticket_sync_manager.tracker.abc import TicketReader, TicketWriter
from ticket_sync_manager.tracker.models import Ticket
from ticket_sync_manager.tracker.workflow_states import ResolvedWorkflowStates
from ticket_sync_manager.utils.constants import DEFAULT_MERGED_LOOKBACK_DAYS

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class PullRequestIndex:
    """Issue number -> pull requests that reference it, deduplicated by URL."""

    def __init__(self) -> None:
        self._by_issue: dict[int, dict[str, ExternalPR]] = {}

    def add(self, pull_request: ExternalPR, issue_numbers: Iterable[int]) -> None:
        for number in issue_numbers:
            self._by_issue.setdefault(number, {})[pull_request.url] = pull_request

    def replace(self, issue_number: int, pull_requests: Iterable[ExternalPR]) -> None:
        self._by_issue[issue_number] = {pull_request.url: pull_request for pull_request in pull_requests}

    def for_issue(self, issue_number: int) -> list[ExternalPR]:
        return list(self._by_issue.get(issue_number, {}).values())

    def for_issues(self, issue_numbers: Iterable[int]) -> list[ExternalPR]:
        """Pull requests for any of the issues, each once."""
        merged: dict[str, ExternalPR] = {}
        for number in issue_numbers:
            merged.update(self._by_issue.get(number, {}))
        return list(merged.values())

    @property
    def issue_numbers(self) -> set[int]:
        return {number for number, pull_requests in self._by_issue.items() if pull_requests}

    def __contains__(self, issue_number: object) -> bool:
        return bool(self._by_issue.get(issue_number))  # type: ignore[call-overload]

    def __len__(self) -> int:
        return len(self.issue_numbers)


async def build_pull_request_index(
    fetcher: PagedFetcher,
    extractor: ReferenceExtractor,
    store: SyncStore,
    merged_lookback_days: int = DEFAULT_MERGED_LOOKBACK_DAYS,
) -> PullRequestIndex:
    """Fetch open and recently merged pull requests and index them by referenced issue.

    Each pull request is persisted with its references; links recorded by
    earlier runs are kept, so an edited PR body never drops a link.
    """
    open_pull_requests = await fetcher.fetch_open_pull_requests()
    merged_pull_requests = await fetcher.fetch_recently_merged_pull_requests(lookback_days=merged_lookback_days)

    index = PullRequestIndex()
    for pull_request in [*open_pull_requests, *merged_pull_requests]:
        references = extractor.extract_issue_references(pull_request.text, source=f"PR #{pull_request.number}")
        store.upsert_pull_request(pull_request, references)
        index.add(pull_request, store.linked_issue_numbers(pull_request.url))

    logger.info(
        "Built pull request index",
        open_pull_requests=len(open_pull_requests),
        merged_pull_requests=len(merged_pull_requests),
        indexed_issues=len(index),
    )
    return index


async def apply_issue_repository_overrides(
    index: PullRequestIndex,
    adapter: GitHubRestAdapter,
    overrides: Mapping[int, list[PullRequestReference]],
    store: SyncStore | None = None,
) -> None:
    """Replace the index entries of overridden issues with explicitly configured pull requests.

    The configured pull requests may live in other repositories. If none of
    them can be fetched, the index entries are kept.
    """
    for issue_number, references in overrides.items():
        fetched: list[ExternalPR] = []
        for reference in references:
            try:
                pull_request = await adapter.get_pull_request(reference.number, owner=reference.owner, repo=reference.repo)
            except GITHUB_READ_ERRORS as exc:
                logger.warning("Could not fetch override pull request", issue_number=issue_number, reference=str(reference), error=str(exc))
                continue
            if pull_request is not None:
                fetched.append(pull_request)
        if not fetched:
            logger.warning("No override pull requests fetched, keeping indexed pull requests", issue_number=issue_number)
            continue
        index.replace(issue_number, fetched)
        if store is not None:
            for pull_request in fetched:
                store.upsert_pull_request(pull_request, [issue_number])
        logger.info("Applied issue repository override", issue_number=issue_number, pull_requests=[pr.url for pr in fetched])


async def search_pull_requests_for_issue(
    adapter: GitHubRestAdapter,
    extractor: ReferenceExtractor,
    issue_number: int,
) -> list[ExternalPR]:
    """Find pull requests for an issue through the search API.

    Candidates are fetched in full and kept only if their text references the
    issue. Search failures yield an empty result.
    """
    query = f"repo:{adapter.owner}/{adapter.repo_name} type:pr #{issue_number}"
    try:
        numbers = await adapter.search_pull_request_numbers(query)
        candidates = [await adapter.get_pull_request(number) for number in numbers]
    except GITHUB_READ_ERRORS as exc:
        logger.warning("Pull request search failed", issue_number=issue_number, error=str(exc))
        return []

    found = [
        candidate
        for candidate in candidates
        if candidate is not None and issue_number in extractor.extract_issue_references(candidate.text, source=f"PR #{candidate.number}")
    ]
    logger.info("Searched pull requests for issue", issue_number=issue_number, candidates=len(numbers), found=len(found))
    return found


async def fill_index_from_search(
    index: PullRequestIndex,
    adapter: GitHubRestAdapter,
    extractor: ReferenceExtractor,
    store: SyncStore,
    issues: Iterable[ExternalIssue],
) -> None:
    """Search for pull requests of open issues the index has nothing for."""
    for issue in issues:
        if issue.state != IssueState.OPEN or issue.number in index:
            continue
        for pull_request in await search_pull_requests_for_issue(adapter, extractor, issue.number):
            store.upsert_pull_request(pull_request, [issue.number])
            index.add(pull_request, [issue.number])


def stored_merged_pull_requests(store: SyncStore, issue_numbers: Iterable[int]) -> list[ExternalPR]:
    """Merged pull requests the store links to any of the issues.

    A merge is final, so a stored merged pull request stays valid evidence after
    it leaves the fetch window. Stored open ones may be stale and are left to
    the live index.
    """
    found: dict[str, ExternalPR] = {}
    for number in issue_numbers:
        for pull_request in store.pull_requests_for_issue(number):
            if pull_request.merged:
                found.setdefault(pull_request.url, pull_request)
    return list(found.values())


def describe_decision(decision: TicketSyncDecision) -> str:
    """Render what a decision would write, for dry-run outcomes."""
    parts = []
    if decision.target_state_name:
        parts.append(f"set state to {decision.target_state_name}")
    if decision.assignee_username:
        parts.append(f"assign to {decision.assignee_username}")
    if decision.clear_assignee:
        parts.append("clear the assignee")
    return " and ".join(parts) or "update"


async def write_decision(tracker: TicketWriter, ticket: Ticket, decision: TicketSyncDecision) -> Ticket:
    """Send the decision's changes to the tracker."""
    return await tracker.update_ticket(
        ticket.id,
        state_id=decision.target_state_id,
        assignee_id=decision.assignee_id,
        clear_assignee=decision.clear_assignee,
    )


class PullRequestSync:
    """Runs the pull request driven sync for individual linked issues."""

    def __init__(
        self,
        tracker: TicketReader,
        store: SyncStore,
        index: PullRequestIndex,
        states: ResolvedWorkflowStates,
        resolver: AssignmentResolver,
        dry_run: bool = False,
    ) -> None:
        if not isinstance(tracker, TicketWriter):
            raise TypeError("The pull request sync needs a tracker client that can write tickets")
        self.tracker = tracker
        self.store = store
        self.index = index
        self.states = states
        self.resolver = resolver
        self.dry_run = dry_run

    async def sync_issue(self, issue: ExternalIssue) -> SyncOutcome:
        """Decide and apply the update for one linked issue."""
        pull_requests = self.index.for_issue(issue.number)
        base = {
            "issue_number": issue.number,
            "ticket_id": issue.ticket_id,
            "ticket_identifier": issue.ticket_identifier,
            "pull_requests": evidence_for(pull_requests),
        }
        if issue.ticket_id is None:
            return SyncOutcome(action=SyncAction.SKIPPED, reason="Issue is not linked to a ticket", **base)

        ticket = await self.tracker.get_ticket(issue.ticket_id)
        if ticket is None:
            return SyncOutcome(action=SyncAction.SKIPPED, reason="Ticket not found in tracker", **base)
        base["ticket_identifier"] = ticket.identifier or issue.ticket_identifier

        decision = decide_pull_request_sync(issue, ticket, pull_requests, self.states, self.resolver)
        outcome = SyncOutcome(
            action=decision.action,
            reason=decision.reason,
            previous_state=ticket.state_name,
            target_state=decision.target_state_name,
            target_category=decision.target_category if decision.needs_write else None,
            assignee_id=decision.assignee_id,
            assignee_username=decision.assignee_username,
            **base,
        )

        if decision.action == SyncAction.UNCHANGED:
            if not self.dry_run:
                self.store.record_tracker_status([issue.number], None, checked_only=True)
            return outcome
        if not decision.needs_write:
            return outcome

        if self.dry_run:
            logger.info("Dry run, not updating ticket", ticket=outcome.ticket_identifier, reason=decision.reason)
            return outcome.model_copy(update={"dry_run": True, "reason": f"[DRY RUN] Would {describe_decision(decision)}: {decision.reason}"})

        await write_decision(self.tracker, ticket, decision)
        status = decision.target_category.value if decision.target_category else ticket.state_name
        self.store.record_tracker_status([issue.number], status)
        logger.info("Updated ticket", ticket=outcome.ticket_identifier, reason=decision.reason)
        return outcome
