"""Defines the Command Line Interface (CLI) using Typer."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

import structlog
import typer
from dotenv import load_dotenv
from githubkit.exception import GitHubException
from pydantic import BaseModel
from typer import Argument, Option
from typing_extensions import Annotated

from ticket_sync_manager.configuration.env import Settings
from ticket_sync_manager.configuration.exceptions import (
    GitHubAuthenticationConfigurationUndefinedError,
    InvalidConfigurationValueError,
    RequiredConfigurationElementError,
)
from ticket_sync_manager.configuration.models import SyncConfig
from ticket_sync_manager.configuration.reconcile import (
    build_sync_configuration,
    parse_github_tokens,
    parse_user_mapping_options,
    validate_github_authentication_configuration,
)
from ticket_sync_manager.github.adapter import GitHubRestAdapter
from ticket_sync_manager.github.exceptions import RateLimitExhaustedError
from ticket_sync_manager.storage.sqlite import SqliteSyncStore
from ticket_sync_manager.synchronize.driver import SyncOrchestrator, build_orchestrator, build_token_pool
from ticket_sync_manager.synchronize.models import CombinedSyncResult
from ticket_sync_manager.tracker.exceptions import TrackerRequestError, WorkflowStateResolutionError
from ticket_sync_manager.utils.constants import CORE_RESOURCE, SEARCH_RESOURCE
from ticket_sync_manager.utils.github import split_repository_in_configuration

load_dotenv()

typer_app = typer.Typer(pretty_exceptions_show_locals=False)

CONFIGURATION_ERRORS = (
    GitHubAuthenticationConfigurationUndefinedError,
    RequiredConfigurationElementError,
    InvalidConfigurationValueError,
    WorkflowStateResolutionError,
    FileNotFoundError,
)


def configure_logging(debug: bool = False) -> None:
    """Configure structlog to render through the standard library logger."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def fail(message: str) -> NoReturn:
    """Print a configuration error and exit with status 1."""
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


@typer_app.callback()
def main_callback(
    ctx: typer.Context,
    repo: Annotated[str | None, Option(envvar="REPO", help="Repository name (owner/repo).")] = None,
    github_api_url: Annotated[str, Option(envvar="GITHUB_API_URL", help="GitHub API URL.")] = "https://api.github.com",
    github_web_host: Annotated[str | None, Option(envvar="GITHUB_WEB_HOST", help="Host used in GitHub issue URLs.")] = None,
    github_token: Annotated[str | None, Option(envvar="GITHUB_TOKEN", help="GitHub token(s), comma-separated for rotation.")] = None,
    github_app_id: Annotated[str | None, Option(envvar="GITHUB_APP_ID", help="GitHub App ID.")] = None,
    github_app_private_key_path: Annotated[Path | None, Option(envvar="GITHUB_APP_PRIVATE_KEY_PATH", help="Path to GitHub App private key.")] = None,
    github_app_installation_id: Annotated[str | None, Option(envvar="GITHUB_APP_INSTALLATION_ID", help="GitHub App Installation ID.")] = None,
    tracker_api_key: Annotated[str | None, Option(envvar="TRACKER_API_KEY", help="Tracker API key.")] = None,
    tracker_team_id: Annotated[str | None, Option(envvar="TRACKER_TEAM_ID", help="Tracker team ID.")] = None,
    tracker_api_url: Annotated[str, Option(envvar="TRACKER_API_URL", help="Tracker GraphQL endpoint.")] = "https://api.linear.app/graphql",
    database_path: Annotated[Path, Option(envvar="DATABASE_PATH", help="Path to the local sync database.")] = Path("ticket_sync.db"),
    organization_engineer: Annotated[
        list[str] | None, Option("--organization-engineer", help="GitHub username eligible for assignment; repeat for several.")
    ] = None,
    user_mapping: Annotated[list[str] | None, Option("--user-mapping", help="username=tracker_user_id; repeat for several.")] = None,
    roster_path: Annotated[Path | None, Option(envvar="ROSTER_PATH", help="YAML roster of organization engineers.")] = None,
    default_assignee_id: Annotated[str | None, Option(envvar="DEFAULT_ASSIGNEE_ID", help="Tracker user for unmapped engineers.")] = None,
    concurrency: Annotated[int, Option(help="Items processed in parallel per batch.")] = 5,
    lookback_days: Annotated[int, Option(help="Days of merged pull requests and issue updates to consider.")] = 90,
    search_fallback: Annotated[bool, Option(help="Search for pull requests of issues the index has none for.")] = True,
    debug: Annotated[bool, Option(envvar="DEBUG", help="Enable debug mode.")] = False,
) -> None:
    """Sync GitHub issue and pull request state into the tracker."""
    configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj.update(
        repo=repo,
        github_api_url=github_api_url,
        github_web_host=github_web_host,
        github_tokens=parse_github_tokens(github_token),
        github_app_id=github_app_id,
        github_app_private_key_path=github_app_private_key_path,
        github_app_installation_id=github_app_installation_id,
        tracker_api_key=tracker_api_key,
        tracker_team_id=tracker_team_id,
        tracker_api_url=tracker_api_url,
        database_path=database_path,
        organization_engineers=organization_engineer or [],
        user_mapping=user_mapping or [],
        roster_path=roster_path,
        default_assignee_id=default_assignee_id,
        concurrency_limit=concurrency,
        merged_lookback_days=lookback_days,
        search_fallback=search_fallback,
        debug=debug,
    )


def load_configuration(ctx: typer.Context, dry_run: bool) -> SyncConfig:
    """Build the run configuration, exiting with status 1 on configuration errors."""
    settings = Settings()
    options: dict[str, Any] = dict(ctx.obj)
    try:
        user_mappings = parse_user_mapping_options(options.pop("user_mapping"))
        return asyncio.run(
            build_sync_configuration(
                **options,
                user_mappings=user_mappings,
                organization_engineers_env=settings.ORGANIZATION_ENGINEERS,
                user_mappings_env=settings.USER_MAPPINGS,
                issue_repository_overrides=settings.ISSUE_REPOSITORY_OVERRIDES,
                dry_run=dry_run or settings.DRY_RUN,
            )
        )
    except CONFIGURATION_ERRORS as exc:
        fail(str(exc))


def print_summary(title: str, summary: BaseModel, as_json: bool) -> None:
    """Print a summary model as JSON or as a short report."""
    if as_json:
        typer.echo(summary.model_dump_json(indent=2))
        return
    if isinstance(summary, CombinedSyncResult):
        print_summary("Pull request sync", summary.pull_requests, as_json)
        print_summary("Completion sync", summary.completion, as_json)
        if summary.audit is not None:
            print_summary("Audit", summary.audit, as_json)
        typer.echo(f"\n{title}: {summary.total_processed} processed, {summary.total_updated} updated, {summary.total_errors} errors")
        return
    data = summary.model_dump(mode="json")
    typer.echo(f"\n{title}{' (dry run)' if data.get('dry_run') else ''}")
    if data.get("error"):
        typer.echo(f"  failed: {data['error']}")
    for key, value in data.items():
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            typer.echo(f"  {key.replace('_', ' ')}: {value}")
    for outcome in data.get("outcomes", []):
        label = outcome.get("ticket_identifier") or outcome.get("ticket_id") or "-"
        issue = f"#{outcome['issue_number']} " if "issue_number" in outcome else ""
        typer.echo(f"  - {issue}{label}: {outcome['action']} ({outcome['reason']})")


async def run_orchestrator(config: SyncConfig, command: str) -> BaseModel:
    """Run one orchestrator command and close its resources."""
    orchestrator: SyncOrchestrator = await build_orchestrator(config)
    async with orchestrator:
        if command == "sync-prs":
            return await orchestrator.run_pull_request_sync()
        if command == "sync-completion":
            return await orchestrator.run_completion_sync()
        if command == "audit":
            return await orchestrator.run_audit()
        return await orchestrator.run_all()


def run_command(ctx: typer.Context, command: str, title: str, dry_run: bool, as_json: bool) -> None:
    config = load_configuration(ctx, dry_run)
    try:
        summary = asyncio.run(run_orchestrator(config, command))
    except (*CONFIGURATION_ERRORS, TrackerRequestError, GitHubException, RateLimitExhaustedError, ValueError) as exc:
        fail(str(exc))
    print_summary(title, summary, as_json)


DryRunOption = Annotated[bool, Option("--dry-run", envvar="DRY_RUN", help="Compute changes without writing to the tracker.")]
JsonOption = Annotated[bool, Option("--json", help="Print the summary as JSON.")]


@typer_app.command(name="sync-prs")
def sync_prs_cli(ctx: typer.Context, dry_run: DryRunOption = False, as_json: JsonOption = False) -> None:
    """Move linked tickets to In Progress or Review from their pull requests."""
    run_command(ctx, "sync-prs", "Pull request sync", dry_run, as_json)


@typer_app.command(name="sync-completion")
def sync_completion_cli(ctx: typer.Context, dry_run: DryRunOption = False, as_json: JsonOption = False) -> None:
    """Mark open tickets Done or Review from their linked issues and pull requests."""
    run_command(ctx, "sync-completion", "Completion sync", dry_run, as_json)


@typer_app.command(name="audit")
def audit_cli(ctx: typer.Context, dry_run: DryRunOption = False, as_json: JsonOption = False) -> None:
    """Revert In Progress or Review tickets that no pull request justifies."""
    run_command(ctx, "audit", "Audit", dry_run, as_json)


@typer_app.command(name="sync-all")
def sync_all_cli(ctx: typer.Context, dry_run: DryRunOption = False, as_json: JsonOption = False) -> None:
    """Run the pull request sync, the completion sync and the audit."""
    run_command(ctx, "sync-all", "Combined sync", dry_run, as_json)


@typer_app.command(name="token-status")
def token_status_cli(ctx: typer.Context) -> None:
    """Show the core and search quota of every configured GitHub token."""
    options = ctx.obj
    try:
        github_authentication_type = asyncio.run(
            validate_github_authentication_configuration(
                github_tokens=options["github_tokens"],
                github_app_id=options["github_app_id"],
                github_app_private_key_path=options["github_app_private_key_path"],
                github_app_installation_id=options["github_app_installation_id"],
            )
        )
        if not options["repo"]:
            raise RequiredConfigurationElementError(name="GitHub repository", cli_name="--repo", env_name="REPO")
        owner, repo_name = asyncio.run(split_repository_in_configuration(options["repo"]))
    except (*CONFIGURATION_ERRORS, ValueError) as exc:
        fail(str(exc))

    config = SyncConfig(
        debug=options["debug"],
        dry_run=True,
        github_api_url=options["github_api_url"],
        github_web_host=options["github_web_host"] or "",
        github_authentication_type=github_authentication_type,
        github_tokens=options["github_tokens"],
        github_app_id=options["github_app_id"],
        github_app_private_key_path=options["github_app_private_key_path"],
        github_app_installation_id=options["github_app_installation_id"],
        repo=options["repo"],
        tracker_api_key="",
        tracker_team_id="",
        tracker_api_url=options["tracker_api_url"],
        database_path=options["database_path"],
    )

    async def collect() -> dict[str, list[dict[str, Any]]]:
        token_pool = await build_token_pool(config)
        adapter = GitHubRestAdapter(token_pool, owner, repo_name, github_api_url=config.github_api_url)
        await adapter.refresh_rate_limits()
        return {resource: token_pool.status(resource) for resource in (CORE_RESOURCE, SEARCH_RESOURCE)}

    for resource, statuses in asyncio.run(collect()).items():
        typer.echo(f"{resource}:")
        for status in statuses:
            marker = "*" if status["active"] else " "
            typer.echo(
                f" {marker} token {status['index']} ({status['token_class']}): "
                f"{status['remaining']}/{status['limit']} remaining, resets in {status['reset_in_seconds']}s"
            )


@typer_app.command(name="link")
def link_cli(
    ctx: typer.Context,
    issue_number: Annotated[int, Argument(help="GitHub issue number.")],
    ticket_id: Annotated[str, Argument(help="Tracker ticket ID.")],
    ticket_identifier: Annotated[str | None, Option(help="Human ticket identifier, e.g. ENG-123.")] = None,
) -> None:
    """Link a GitHub issue to a tracker ticket in the local database."""
    store = SqliteSyncStore(ctx.obj["database_path"])
    try:
        store.link_ticket(issue_number, ticket_id, ticket_identifier)
    finally:
        store.close()
    typer.echo(f"Linked issue #{issue_number} to ticket {ticket_identifier or ticket_id}")


if __name__ == "__main__":
    typer_app()
