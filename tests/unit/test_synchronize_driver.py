"""Unit tests for the sync orchestrator and its builders."""

from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from ticket_sync_manager.assignment.resolver import AssignmentResolver
from ticket_sync_manager.configuration.models import GitHubAuthenticationType, SyncConfig
from ticket_sync_manager.github.models import ExternalIssue, ExternalPR, IssueState
from ticket_sync_manager.storage.sqlite import SqliteSyncStore
from ticket_sync_manager.synchronize.driver import SyncOrchestrator, build_assignment_resolver
from ticket_sync_manager.tracker.abc import TicketReader, UserDirectory
from ticket_sync_manager.tracker.models import Ticket, TrackerUser


def make_config(**overrides: Any) -> SyncConfig:
    values: dict[str, Any] = {
        "debug": False,
        "dry_run": False,
        "github_api_url": "https://api.github.com",
        "github_web_host": "github.com",
        "github_authentication_type": GitHubAuthenticationType.PAT,
        "github_tokens": ["tok"],
        "github_app_id": None,
        "github_app_private_key_path": None,
        "github_app_installation_id": None,
        "repo": "acme/widgets",
        "tracker_api_key": "lin_api_key",
        "tracker_team_id": "team-1",
        "tracker_api_url": "https://api.linear.app/graphql",
        "database_path": Path(":memory:"),
    }
    values.update(overrides)
    return SyncConfig(**values)


@pytest.fixture
def orchestrator_factory(
    tracker: Any,
    store: SqliteSyncStore,
    github_adapter: Any,
    resolver: AssignmentResolver,
    make_fetcher: Callable[..., Any],
    make_pr: Callable[..., ExternalPR],
    make_issue: Callable[..., ExternalIssue],
    make_ticket: Callable[..., Ticket],
) -> Callable[..., SyncOrchestrator]:
    """An orchestrator over three linked issues.

    Issue 1 has an open PR, issue 2 a merged PR and issue 3 was closed while
    its ticket still sits in In Progress.
    """
    for number in (1, 2, 3):
        store.link_ticket(number, f"t-{number}", f"ENG-t-{number}")
    tracker.add(make_ticket("t-1"))
    tracker.add(make_ticket("t-2"))
    tracker.add(make_ticket("t-3", state_id="state-in-progress", assignee_id="user-bob"))
    fetcher = make_fetcher(
        open_pull_requests=[make_pr(10, author="alice", body="closes #1")],
        merged_pull_requests=[make_pr(11, state="closed", merged=True, author="bob", body="fixes #2")],
        issues=[make_issue(1), make_issue(2), make_issue(3, state=IssueState.CLOSED)],
    )

    def factory(dry_run: bool = False) -> SyncOrchestrator:
        return SyncOrchestrator(tracker, store, github_adapter, fetcher, resolver, dry_run=dry_run)

    return factory


@pytest.mark.asyncio
async def test_run_all(orchestrator_factory: Callable[..., SyncOrchestrator], tracker: Any) -> None:
    orchestrator = orchestrator_factory()

    # When
    result = await orchestrator.run_all()

    # Then
    assert result.pull_requests.set_to_in_progress == 1
    assert result.pull_requests.set_to_review == 1
    assert result.pull_requests.skipped == 1
    assert result.completion.marked_done == 1
    assert result.audit is not None
    assert result.audit.elevated == 2
    assert result.audit.reverted == 0
    assert result.total_updated == 3
    assert result.total_errors == 0
    assert tracker.tickets["t-1"].state_id == "state-in-progress"
    assert tracker.tickets["t-1"].assignee_id == "user-alice"
    assert tracker.tickets["t-2"].state_id == "state-review"
    assert tracker.tickets["t-2"].assignee_id == "user-bob"
    assert tracker.tickets["t-3"].state_id == "state-done"
    # GitHub is read once per run.
    assert orchestrator.fetcher.calls == ["issues", "open", "merged"]  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_run_all_twice_is_idempotent(orchestrator_factory: Callable[..., SyncOrchestrator]) -> None:
    await orchestrator_factory().run_all()

    second = await orchestrator_factory().run_all()

    assert second.total_updated == 0


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(orchestrator_factory: Callable[..., SyncOrchestrator], tracker: Any) -> None:
    result = await orchestrator_factory(dry_run=True).run_all()

    assert result.dry_run
    assert result.pull_requests.updated == 2
    assert tracker.updates == []
    assert all(outcome.dry_run for outcome in result.pull_requests.outcomes if outcome.action == "updated")


@pytest.mark.asyncio
async def test_per_item_errors_do_not_stop_the_run(orchestrator_factory: Callable[..., SyncOrchestrator], tracker: Any) -> None:
    tracker.fail_for.add("t-1")

    summary = await orchestrator_factory().run_pull_request_sync()

    assert summary.errors == 1
    assert summary.updated == 1


@pytest.mark.asyncio
async def test_failed_pass_is_recorded_and_the_run_continues(orchestrator_factory: Callable[..., SyncOrchestrator], tracker: Any) -> None:
    tracker.list_open_tickets = AsyncMock(side_effect=RuntimeError("tracker 502"))

    # When
    result = await orchestrator_factory().run_all()

    # Then
    assert result.pull_requests.error is None
    assert result.pull_requests.updated == 2
    assert result.completion.error == "tracker 502"
    assert result.completion.errors == 1
    assert result.audit is not None
    assert result.audit.error == "tracker 502"
    assert result.total_errors == 2
    assert tracker.tickets["t-1"].state_id == "state-in-progress"


def test_tracker_without_required_capabilities_is_rejected(store: SqliteSyncStore, github_adapter: Any, resolver: AssignmentResolver) -> None:
    class ReadOnlyTracker(TicketReader):
        async def get_ticket(self, ticket_id: str) -> Ticket | None:
            return None

    with pytest.raises(TypeError, match="TicketWriter"):
        SyncOrchestrator(ReadOnlyTracker(), store, github_adapter, object(), resolver)  # type: ignore[arg-type]


class DirectoryTracker(UserDirectory):
    async def list_users(self) -> list[TrackerUser]:
        return [TrackerUser(id="user-dana", email="dana@example.com")]


@pytest.mark.asyncio
async def test_build_assignment_resolver_auto_maps_roster_emails(tmp_path: Path) -> None:
    roster = tmp_path / "engineers.yaml"
    roster.write_text("engineers:\n  - github: dana\n    email: dana@example.com\n  - github: erin\n    tracker_user_id: user-erin\n")

    resolver = await build_assignment_resolver(make_config(roster_path=roster), DirectoryTracker())

    assert resolver.organization_engineers == {"dana", "erin"}
    assert resolver.resolve("dana") == "user-dana"
    assert resolver.resolve("erin") == "user-erin"


@pytest.mark.asyncio
async def test_build_assignment_resolver_explicit_settings_win(tmp_path: Path) -> None:
    roster = tmp_path / "engineers.yaml"
    roster.write_text("- github: dana\n  email: dana@example.com\n")
    config = make_config(roster_path=roster, organization_engineers=["frank"], user_mappings={"frank": "user-frank"})

    resolver = await build_assignment_resolver(config, DirectoryTracker())

    assert resolver.organization_engineers == {"frank"}
    assert resolver.user_mappings == {"frank": "user-frank"}


@pytest.mark.asyncio
async def test_build_assignment_resolver_falls_back_to_environment() -> None:
    config = make_config(organization_engineers_env="gina", user_mappings_env='{"gina": "user-gina"}', default_assignee_id="user-default")

    resolver = await build_assignment_resolver(config, object())

    assert resolver.resolve("gina") == "user-gina"
    assert resolver.default_assignee_id == "user-default"
