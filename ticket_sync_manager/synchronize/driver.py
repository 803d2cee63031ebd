"""Orchestrates the pull request sync, completion sync and audit passes."""

import time
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import structlog
from structlog.contextvars import bound_contextvars

from ticket_sync_manager.assignment.resolver import AssignmentResolver
from ticket_sync_manager.assignment.roster import (
    RosterEntry,
    auto_build_mappings,
    load_roster,
    parse_organization_engineers,
    parse_user_mappings,
)
from ticket_sync_manager.configuration.models import GitHubAuthenticationType, PullRequestReference, SyncConfig
from ticket_sync_manager.github.adapter import GitHubRestAdapter
from ticket_sync_manager.github.client import get_github_app_installation_token
from ticket_sync_manager.github.fetcher import PagedFetcher
from ticket_sync_manager.github.token_pool import TokenPool
from ticket_sync_manager.references.extractor import ReferenceExtractor
from ticket_sync_manager.storage.abc import SyncStore
from ticket_sync_manager.storage.sqlite import SqliteSyncStore
from ticket_sync_manager.synchronize.audit import AuditReconciler
from ticket_sync_manager.synchronize.completion import CompletionSync
from ticket_sync_manager.synchronize.models import (
    AuditSummary,
    CombinedSyncResult,
    CompletionOutcome,
    CompletionSyncSummary,
    PullRequestSyncSummary,
    SyncAction,
    SyncOutcome,
)
from ticket_sync_manager.synchronize.pull_requests import (
    PullRequestIndex,
    PullRequestSync,
    apply_issue_repository_overrides,
    build_pull_request_index,
    fill_index_from_search,
)
from ticket_sync_manager.synchronize.types import ClosureConfirmationOracle
from ticket_sync_manager.synchronize.utils import process_in_batches
from ticket_sync_manager.tracker.abc import OpenTicketLister, TicketReader, TicketWriter, UserDirectory, WorkflowStateReader
from ticket_sync_manager.tracker.linear import LinearTicketClient
from ticket_sync_manager.tracker.models import Ticket
from ticket_sync_manager.tracker.workflow_states import ResolvedWorkflowStates, resolve_workflow_states
from ticket_sync_manager.utils.constants import DEFAULT_CONCURRENCY_LIMIT, DEFAULT_MERGED_LOOKBACK_DAYS
from ticket_sync_manager.utils.github import split_repository_in_configuration

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

REQUIRED_TRACKER_CAPABILITIES: tuple[type, ...] = (TicketReader, TicketWriter, WorkflowStateReader, OpenTicketLister)

SummaryT = TypeVar("SummaryT", PullRequestSyncSummary, CompletionSyncSummary, AuditSummary)


class SyncOrchestrator:
    """Wires the sync components together for one run.

    Workflow states, the issue refresh and the pull request index are each
    computed once and shared by every pass of the run.
    """

    def __init__(
        self,
        tracker: Any,
        store: SyncStore,
        adapter: GitHubRestAdapter,
        fetcher: PagedFetcher,
        resolver: AssignmentResolver,
        web_host: str = "github.com",
        issue_repository_overrides: Mapping[int, list[PullRequestReference]] | None = None,
        oracle: ClosureConfirmationOracle | None = None,
        dry_run: bool = False,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        merged_lookback_days: int = DEFAULT_MERGED_LOOKBACK_DAYS,
        search_fallback: bool = True,
    ) -> None:
        """Initialize the orchestrator.

        Raises:
            TypeError: If the tracker client lacks a capability the passes need.
        """
        missing = [capability.__name__ for capability in REQUIRED_TRACKER_CAPABILITIES if not isinstance(tracker, capability)]
        if missing:
            raise TypeError(f"Tracker client {type(tracker).__name__} is missing required capabilities: {', '.join(missing)}")
        self.tracker = tracker
        self.store = store
        self.adapter = adapter
        self.fetcher = fetcher
        self.resolver = resolver
        self.web_host = web_host
        self.issue_repository_overrides = dict(issue_repository_overrides or {})
        self.oracle = oracle
        self.dry_run = dry_run
        self.concurrency_limit = concurrency_limit
        self.merged_lookback_days = merged_lookback_days
        self.search_fallback = search_fallback
        self._states: ResolvedWorkflowStates | None = None
        self._index: PullRequestIndex | None = None
        self._issues_refreshed = False

    async def aclose(self) -> None:
        """Release the tracker client and the store."""
        aclose = getattr(self.tracker, "aclose", None)
        if aclose is not None:
            await aclose()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()

    async def __aenter__(self) -> "SyncOrchestrator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def resolve_states(self) -> ResolvedWorkflowStates:
        """Resolve the team's workflow states; fails the run if a required one is missing."""
        if self._states is None:
            self._states = resolve_workflow_states(await self.tracker.list_workflow_states())
        return self._states

    async def refresh_issues(self) -> int:
        """Refresh recently updated issues into the store."""
        if self._issues_refreshed:
            return 0
        issues = await self.fetcher.fetch_recent_issues(lookback_days=self.merged_lookback_days)
        for issue in issues:
            self.store.upsert_issue(issue)
        self._issues_refreshed = True
        logger.info("Refreshed issues", count=len(issues))
        return len(issues)

    async def pull_request_index(self) -> PullRequestIndex:
        """Build the issue -> pull request index once per run."""
        if self._index is None:
            await self.refresh_issues()
            extractor = ReferenceExtractor(self.store.known_issue_numbers(), host=self.web_host)
            index = await build_pull_request_index(self.fetcher, extractor, self.store, self.merged_lookback_days)
            if self.issue_repository_overrides:
                await apply_issue_repository_overrides(index, self.adapter, self.issue_repository_overrides, self.store)
            if self.search_fallback:
                await fill_index_from_search(index, self.adapter, extractor, self.store, self.store.list_linked_issues(open_only=True))
            self._index = index
        return self._index

    async def _guarded(self, context: dict[str, Any], work: Callable[[], Awaitable[Any]], on_error: Callable[[Exception], Any]) -> Any:
        with bound_contextvars(**context):
            try:
                return await work()
            except Exception as exc:
                logger.error("Failed to process item", error=str(exc))
                return on_error(exc)

    async def run_pull_request_sync(self) -> PullRequestSyncSummary:
        """Sync every linked issue's ticket from its pull requests."""
        start_time = time.time()
        states = await self.resolve_states()
        index = await self.pull_request_index()
        sync = PullRequestSync(self.tracker, self.store, index, states, self.resolver, dry_run=self.dry_run)
        issues = self.store.list_linked_issues()

        async def process(issue: Any) -> SyncOutcome:
            return await self._guarded(
                {"issue_number": issue.number, "ticket": issue.ticket_identifier or issue.ticket_id},
                lambda: sync.sync_issue(issue),
                lambda exc: SyncOutcome(
                    issue_number=issue.number,
                    ticket_id=issue.ticket_id,
                    ticket_identifier=issue.ticket_identifier,
                    action=SyncAction.ERROR,
                    reason=str(exc),
                    dry_run=self.dry_run,
                ),
            )

        outcomes = await process_in_batches(issues, process, self.concurrency_limit)
        summary = PullRequestSyncSummary.from_outcomes(outcomes, dry_run=self.dry_run)
        logger.info(
            "Pull request sync complete",
            duration=round(time.time() - start_time, 2),
            total=summary.total,
            updated=summary.updated,
            unchanged=summary.unchanged,
            skipped=summary.skipped,
            errors=summary.errors,
        )
        return summary

    async def run_completion_sync(self) -> CompletionSyncSummary:
        """Mark open tickets Done or Review from their linked issues and pull requests."""
        start_time = time.time()
        states = await self.resolve_states()
        await self.refresh_issues()
        sync = CompletionSync(
            self.tracker,
            self.store,
            self.adapter,
            states,
            web_host=self.web_host,
            index=self._index,
            oracle=self.oracle,
            dry_run=self.dry_run,
        )
        tickets = await self.tracker.list_open_tickets()

        async def process(ticket: Ticket) -> CompletionOutcome:
            return await self._guarded(
                {"ticket": ticket.label},
                lambda: sync.sync_ticket(ticket),
                lambda exc: CompletionOutcome(
                    ticket_id=ticket.id,
                    ticket_identifier=ticket.identifier,
                    action=SyncAction.ERROR,
                    reason=str(exc),
                    dry_run=self.dry_run,
                ),
            )

        outcomes = await process_in_batches(tickets, process, self.concurrency_limit)
        summary = CompletionSyncSummary.from_outcomes(outcomes, dry_run=self.dry_run)
        logger.info(
            "Completion sync complete",
            duration=round(time.time() - start_time, 2),
            total=summary.total,
            marked_done=summary.marked_done,
            set_to_review=summary.set_to_review,
            skipped_no_links=summary.skipped_no_links,
            errors=summary.errors,
        )
        return summary

    async def run_audit(self) -> AuditSummary:
        """Revert elevated tickets whose state is no longer justified."""
        states = await self.resolve_states()
        index = await self.pull_request_index()
        reconciler = AuditReconciler(
            self.tracker,
            self.store,
            index,
            states,
            adapter=self.adapter,
            web_host=self.web_host,
            concurrency_limit=self.concurrency_limit,
        )
        return await reconciler.audit_and_fix(dry_run=self.dry_run)

    async def _run_pass(self, name: str, run: Callable[[], Awaitable[SummaryT]], summary_type: type[SummaryT]) -> SummaryT:
        """Run one pass of ``run_all``; a failure is recorded on the pass summary instead of ending the run."""
        try:
            return await run()
        except Exception as exc:
            logger.error("Sync pass failed, continuing with the next pass", sync_pass=name, error=str(exc))
            return summary_type(dry_run=self.dry_run, error=str(exc), errors=1)

    async def run_all(self, audit: bool = True) -> CombinedSyncResult:
        """Run the pull request sync, then the completion sync, then the audit.

        Missing workflow states fail the run before anything is written. After
        that each pass runs even if an earlier one failed.
        """
        await self.resolve_states()
        pull_requests = await self._run_pass("pull requests", self.run_pull_request_sync, PullRequestSyncSummary)
        completion = await self._run_pass("completion", self.run_completion_sync, CompletionSyncSummary)
        audit_summary = await self._run_pass("audit", self.run_audit, AuditSummary) if audit else None
        return CombinedSyncResult(dry_run=self.dry_run, pull_requests=pull_requests, completion=completion, audit=audit_summary)


async def build_token_pool(config: SyncConfig) -> TokenPool:
    """Create the token pool from personal tokens and, if configured, a GitHub App installation token."""
    app_tokens: list[str] = []
    if config.github_authentication_type in (GitHubAuthenticationType.APP, GitHubAuthenticationType.PAT_AND_APP):
        if config.github_app_private_key_path is None or config.github_app_id is None:
            raise RuntimeError("GitHub App authentication requires app_id and private_key_path in config.")
        app_tokens.append(
            await get_github_app_installation_token(
                repo=config.repo,
                github_app_id=config.github_app_id,
                github_app_private_key_path=config.github_app_private_key_path,
                github_app_installation_id=config.github_app_installation_id,
                github_api_url=config.github_api_url,
            )
        )
    return TokenPool(personal_tokens=config.github_tokens, app_tokens=app_tokens)


async def build_assignment_resolver(config: SyncConfig, tracker: Any) -> AssignmentResolver:
    """Build the resolver from explicit settings, the roster, tracker users and the environment, in that order."""
    roster: list[RosterEntry] = load_roster(config.roster_path) if config.roster_path else []
    engineers = parse_organization_engineers(config.organization_engineers, roster, config.organization_engineers_env)

    mappings = parse_user_mappings(config.user_mappings, roster)
    if not config.user_mappings and isinstance(tracker, UserDirectory) and any(entry.email for entry in roster):
        auto_mappings = auto_build_mappings(roster, await tracker.list_users())
        mappings = {**auto_mappings, **mappings}
        logger.info("Auto-built user mappings from roster emails", count=len(auto_mappings))
    if not mappings:
        mappings = parse_user_mappings(env_value=config.user_mappings_env)
    return AssignmentResolver(engineers, mappings, config.default_assignee_id)


async def build_orchestrator(config: SyncConfig, oracle: ClosureConfirmationOracle | None = None) -> SyncOrchestrator:
    """Create every component of a run from the reconciled configuration."""
    owner, repo_name = await split_repository_in_configuration(config.repo)
    token_pool = await build_token_pool(config)
    adapter = GitHubRestAdapter(token_pool, owner, repo_name, github_api_url=config.github_api_url)
    tracker = LinearTicketClient(config.tracker_api_key, config.tracker_team_id, api_url=config.tracker_api_url)
    resolver = await build_assignment_resolver(config, tracker)
    return SyncOrchestrator(
        tracker=tracker,
        store=SqliteSyncStore(config.database_path),
        adapter=adapter,
        fetcher=PagedFetcher(adapter),
        resolver=resolver,
        web_host=config.github_web_host,
        issue_repository_overrides=config.issue_repository_overrides,
        oracle=oracle,
        dry_run=config.dry_run,
        concurrency_limit=config.concurrency_limit,
        merged_lookback_days=config.merged_lookback_days,
        search_fallback=config.search_fallback,
    )
