"""Models for sync decisions, per-item outcomes and run summaries."""

from enum import Enum
from typing import Iterable

from pydantic import BaseModel, Field, computed_field

from ticket_sync_manager.github.models import ExternalPR
from ticket_sync_manager.tracker.workflow_states import StateCategory


class SyncAction(str, Enum):
    """What happened to one item in a run."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    ERROR = "error"


class PullRequestEvidence(BaseModel):
    """The facts about a pull request that a decision relied on."""

    number: int
    url: str
    state: str
    merged: bool
    author: str = ""

    @classmethod
    def from_pull_request(cls, pull_request: ExternalPR) -> "PullRequestEvidence":
        return cls(
            number=pull_request.number,
            url=pull_request.url,
            state=pull_request.state,
            merged=pull_request.merged,
            author=pull_request.author,
        )


def evidence_for(pull_requests: Iterable[ExternalPR]) -> list[PullRequestEvidence]:
    """Evidence records for a set of pull requests, in number order."""
    return [PullRequestEvidence.from_pull_request(pull_request) for pull_request in sorted(pull_requests, key=lambda pr: pr.number)]


class TicketSyncDecision(BaseModel):
    """The target state and assignee for a ticket, and whether a write is needed.

    ``target_state_id`` and ``assignee_id`` are None when that field is left
    as it is.
    """

    action: SyncAction
    reason: str
    target_category: StateCategory | None = None
    target_state_id: str | None = None
    target_state_name: str | None = None
    assignee_id: str | None = None
    assignee_username: str | None = None
    clear_assignee: bool = False

    @property
    def needs_write(self) -> bool:
        return self.action == SyncAction.UPDATED


class SyncOutcome(BaseModel):
    """Result of the pull request sync for one linked issue."""

    issue_number: int
    ticket_id: str | None = None
    ticket_identifier: str | None = None
    action: SyncAction
    reason: str
    dry_run: bool = False
    previous_state: str | None = None
    target_state: str | None = None
    target_category: StateCategory | None = None
    assignee_id: str | None = None
    assignee_username: str | None = None
    pull_requests: list[PullRequestEvidence] = Field(default_factory=list)


class CompletionOutcome(BaseModel):
    """Result of the completion sync for one open ticket."""

    ticket_id: str
    ticket_identifier: str | None = None
    action: SyncAction
    reason: str
    dry_run: bool = False
    target_category: StateCategory | None = None
    issue_numbers: list[int] = Field(default_factory=list)
    open_issue_numbers: list[int] = Field(default_factory=list)
    pull_requests: list[PullRequestEvidence] = Field(default_factory=list)
    no_links: bool = False


class AuditOutcome(BaseModel):
    """Result of auditing one elevated ticket."""

    ticket_id: str
    ticket_identifier: str | None = None
    action: SyncAction
    reason: str
    dry_run: bool = False
    previous_state: str | None = None
    previous_category: StateCategory | None = None
    justified: bool = False
    fixed: bool = False
    issue_numbers: list[int] = Field(default_factory=list)
    pull_requests: list[PullRequestEvidence] = Field(default_factory=list)


class SyncSummary(BaseModel):
    """Counters shared by every pass.

    ``error`` is set when a pass could not run at all, for example when the
    tracker failed to list its open tickets.
    """

    dry_run: bool = False
    error: str | None = None
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0

    @staticmethod
    def count_actions(actions: Iterable[SyncAction]) -> dict[str, int]:
        counts = {"total": 0, "updated": 0, "unchanged": 0, "skipped": 0, "errors": 0}
        for action in actions:
            counts["total"] += 1
            counts["errors" if action == SyncAction.ERROR else action.value] += 1
        return counts


class PullRequestSyncSummary(SyncSummary):
    """Summary of the pull request sync."""

    set_to_in_progress: int = 0
    set_to_review: int = 0
    assigned_only: int = 0
    outcomes: list[SyncOutcome] = Field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: list[SyncOutcome], dry_run: bool = False) -> "PullRequestSyncSummary":
        updated = [outcome for outcome in outcomes if outcome.action == SyncAction.UPDATED]
        return cls(
            dry_run=dry_run,
            outcomes=outcomes,
            set_to_in_progress=sum(1 for outcome in updated if outcome.target_category == StateCategory.IN_PROGRESS),
            set_to_review=sum(1 for outcome in updated if outcome.target_category == StateCategory.REVIEW),
            assigned_only=sum(1 for outcome in updated if outcome.target_category is None),
            **cls.count_actions(outcome.action for outcome in outcomes),
        )


class CompletionSyncSummary(SyncSummary):
    """Summary of the completion sync."""

    marked_done: int = 0
    set_to_review: int = 0
    skipped_no_links: int = 0
    outcomes: list[CompletionOutcome] = Field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: list[CompletionOutcome], dry_run: bool = False) -> "CompletionSyncSummary":
        updated = [outcome for outcome in outcomes if outcome.action == SyncAction.UPDATED]
        return cls(
            dry_run=dry_run,
            outcomes=outcomes,
            marked_done=sum(1 for outcome in updated if outcome.target_category == StateCategory.DONE),
            set_to_review=sum(1 for outcome in updated if outcome.target_category == StateCategory.REVIEW),
            skipped_no_links=sum(1 for outcome in outcomes if outcome.no_links),
            **cls.count_actions(outcome.action for outcome in outcomes),
        )


class AuditSummary(SyncSummary):
    """Summary of the audit pass.

    ``checked`` counts every ticket read, ``elevated`` those found in
    In Progress or Review; only elevated tickets and errors produce outcomes.
    """

    checked: int = 0
    elevated: int = 0
    justified: int = 0
    reverted: int = 0
    outcomes: list[AuditOutcome] = Field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: list[AuditOutcome], checked: int, dry_run: bool = False) -> "AuditSummary":
        return cls(
            dry_run=dry_run,
            outcomes=outcomes,
            checked=checked,
            elevated=sum(1 for outcome in outcomes if outcome.previous_category is not None),
            justified=sum(1 for outcome in outcomes if outcome.justified),
            reverted=sum(1 for outcome in outcomes if outcome.action == SyncAction.UPDATED),
            **cls.count_actions(outcome.action for outcome in outcomes),
        )


class CombinedSyncResult(BaseModel):
    """Results of the pull request sync, completion sync and audit run together."""

    dry_run: bool = False
    pull_requests: PullRequestSyncSummary
    completion: CompletionSyncSummary
    audit: AuditSummary | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_processed(self) -> int:
        return self.pull_requests.total + self.completion.total + (self.audit.total if self.audit else 0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_updated(self) -> int:
        return self.pull_requests.updated + self.completion.updated + (self.audit.updated if self.audit else 0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_errors(self) -> int:
        return self.pull_requests.errors + self.completion.errors + (self.audit.errors if self.audit else 0)
