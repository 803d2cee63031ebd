"""Fixtures for unit tests."""

from datetime import datetime, timezone
from typing import Any, Callable, Generator

import pytest
import structlog

from ticket_sync_manager.assignment.resolver import AssignmentResolver
from ticket_sync_manager.github.models import ExternalIssue, ExternalPR, IssueState
from ticket_sync_manager.storage.sqlite import SqliteSyncStore
from ticket_sync_manager.tracker.abc import OpenTicketLister, TicketReader, TicketWriter, WorkflowStateReader
from ticket_sync_manager.tracker.models import Ticket, WorkflowState
from ticket_sync_manager.tracker.workflow_states import ResolvedWorkflowStates, resolve_workflow_states

TEAM_STATES = [
    WorkflowState(id="state-backlog", name="Backlog", type="backlog"),
    WorkflowState(id="state-todo", name="Todo", type="unstarted"),
    WorkflowState(id="state-in-progress", name="In Progress", type="started"),
    WorkflowState(id="state-review", name="In Review", type="started"),
    WorkflowState(id="state-done", name="Done", type="completed"),
    WorkflowState(id="state-canceled", name="Canceled", type="canceled"),
]


@pytest.fixture(autouse=True)
def configure_structlog_for_caplog() -> Generator[None, None, None]:
    """Configure structlog for use with caplog."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    yield
    structlog.reset_defaults()


class FakeTracker(TicketReader, TicketWriter, WorkflowStateReader, OpenTicketLister):
    """In-memory tracker that applies updates to its tickets."""

    def __init__(self, tickets: list[Ticket] | None = None, states: list[WorkflowState] | None = None) -> None:
        self.tickets: dict[str, Ticket] = {ticket.id: ticket for ticket in tickets or []}
        self.states = list(states if states is not None else TEAM_STATES)
        self.updates: list[dict[str, Any]] = []
        self.fail_for: set[str] = set()

    def add(self, ticket: Ticket) -> Ticket:
        self.tickets[ticket.id] = ticket
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        if ticket_id in self.fail_for:
            raise RuntimeError(f"tracker unavailable for {ticket_id}")
        ticket = self.tickets.get(ticket_id)
        return ticket.model_copy() if ticket is not None else None

    async def update_ticket(self, ticket_id: str, state_id: str | None = None, assignee_id: str | None = None, clear_assignee: bool = False) -> Ticket:
        self.updates.append({"ticket_id": ticket_id, "state_id": state_id, "assignee_id": assignee_id, "clear_assignee": clear_assignee})
        ticket = self.tickets[ticket_id]
        changes: dict[str, Any] = {}
        if state_id is not None:
            state = next(state for state in self.states if state.id == state_id)
            changes.update(state_id=state.id, state_name=state.name, state_type=state.type)
        if assignee_id is not None:
            changes["assignee_id"] = assignee_id
        elif clear_assignee:
            changes["assignee_id"] = None
        self.tickets[ticket_id] = ticket.model_copy(update=changes)
        return self.tickets[ticket_id]

    async def list_workflow_states(self) -> list[WorkflowState]:
        return list(self.states)

    async def list_open_tickets(self) -> list[Ticket]:
        return [ticket.model_copy() for ticket in self.tickets.values() if ticket.state_type not in ("completed", "canceled")]


class FakeGitHubAdapter:
    """Stands in for GitHubRestAdapter with pull requests held in memory."""

    def __init__(self, owner: str = "acme", repo_name: str = "widgets") -> None:
        self.owner = owner
        self.repo_name = repo_name
        self.pull_requests: dict[tuple[str, str, int], ExternalPR] = {}
        self.search_results: dict[str, list[int]] = {}
        self.get_calls: list[tuple[str, str, int]] = []

    def add_pull_request(self, pull_request: ExternalPR, owner: str | None = None, repo: str | None = None) -> None:
        self.pull_requests[(owner or self.owner, repo or self.repo_name, pull_request.number)] = pull_request

    async def get_pull_request(self, pull_number: int, owner: str | None = None, repo: str | None = None) -> ExternalPR | None:
        key = (owner or self.owner, repo or self.repo_name, pull_number)
        self.get_calls.append(key)
        return self.pull_requests.get(key)

    async def search_pull_request_numbers(self, query: str, per_page: int = 100) -> list[int]:
        return self.search_results.get(query, [])


class FakeFetcher:
    """Stands in for PagedFetcher."""

    def __init__(self, open_pull_requests: list[ExternalPR] | None = None, merged_pull_requests: list[ExternalPR] | None = None, issues: list[ExternalIssue] | None = None) -> None:
        self.open_pull_requests = open_pull_requests or []
        self.merged_pull_requests = merged_pull_requests or []
        self.issues = issues or []
        self.calls: list[str] = []

    async def fetch_open_pull_requests(self) -> list[ExternalPR]:
        self.calls.append("open")
        return list(self.open_pull_requests)

    async def fetch_recently_merged_pull_requests(self, lookback_days: int = 90, max_pages: int = 10) -> list[ExternalPR]:
        self.calls.append("merged")
        return list(self.merged_pull_requests)

    async def fetch_recent_issues(self, lookback_days: int = 90) -> list[ExternalIssue]:
        self.calls.append("issues")
        return list(self.issues)


@pytest.fixture
def states() -> ResolvedWorkflowStates:
    """Workflow states of a typical team."""
    return resolve_workflow_states(TEAM_STATES)


@pytest.fixture
def store() -> Generator[SqliteSyncStore, None, None]:
    """An in-memory sync store."""
    sync_store = SqliteSyncStore(":memory:")
    yield sync_store
    sync_store.close()


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def github_adapter() -> FakeGitHubAdapter:
    return FakeGitHubAdapter()


@pytest.fixture
def resolver() -> AssignmentResolver:
    """Resolver with two mapped engineers and one unmapped engineer."""
    return AssignmentResolver(
        organization_engineers=["alice", "bob", "carol"],
        user_mappings={"alice": "user-alice", "bob": "user-bob"},
    )


@pytest.fixture
def make_pr() -> Callable[..., ExternalPR]:
    """Factory for pull requests in acme/widgets."""

    def factory(number: int, state: str = "open", merged: bool = False, author: str = "alice", body: str = "", title: str = "") -> ExternalPR:
        return ExternalPR(
            number=number,
            url=f"https://github.com/acme/widgets/pull/{number}",
            title=title or f"PR {number}",
            body=body,
            state=state,
            merged=merged,
            author=author,
            updated_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
        )

    return factory


@pytest.fixture
def make_ticket() -> Callable[..., Ticket]:
    """Factory for tickets in a given workflow state."""

    def factory(ticket_id: str, state_id: str = "state-todo", assignee_id: str | None = None, description: str | None = None) -> Ticket:
        state = next(state for state in TEAM_STATES if state.id == state_id)
        return Ticket(
            id=ticket_id,
            identifier=f"ENG-{ticket_id}",
            title=f"Ticket {ticket_id}",
            description=description,
            state_id=state.id,
            state_name=state.name,
            state_type=state.type,
            assignee_id=assignee_id,
        )

    return factory


@pytest.fixture
def make_issue() -> Callable[..., ExternalIssue]:
    """Factory for issues linked to tickets."""

    def factory(number: int, ticket_id: str | None = None, state: IssueState = IssueState.OPEN, assignees: list[str] | None = None) -> ExternalIssue:
        return ExternalIssue(
            number=number,
            title=f"Issue {number}",
            state=state,
            assignees=assignees or [],
            ticket_id=ticket_id,
            ticket_identifier=f"ENG-{ticket_id}" if ticket_id else None,
        )

    return factory


@pytest.fixture
def make_fetcher() -> type[FakeFetcher]:
    """The fake fetcher class, built per test with its pull requests and issues."""
    return FakeFetcher


@pytest.fixture
def make_tracker() -> type[FakeTracker]:
    return FakeTracker
