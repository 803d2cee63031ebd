"""Resolution of the team's workflow states into the categories the sync uses."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

import structlog

from ticket_sync_manager.tracker.exceptions import WorkflowStateResolutionError
from ticket_sync_manager.tracker.models import WorkflowState

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class StateCategory(str, Enum):
    """Workflow stage a tracker state is treated as."""

    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    CANCELED = "canceled"


StateMatcher = Callable[[WorkflowState], bool]


def _name(state: WorkflowState) -> str:
    return state.name.strip().lower()


def _is_review(state: WorkflowState) -> bool:
    return state.type.lower() == "review" or "review" in _name(state)


# First matcher that finds a state wins for each category.
CATEGORY_MATCHERS: dict[StateCategory, tuple[StateMatcher, ...]] = {
    StateCategory.REVIEW: (_is_review,),
    StateCategory.IN_PROGRESS: (
        lambda state: _name(state).replace(" ", "") == "inprogress",
        lambda state: state.type.lower() == "started" and not _is_review(state),
    ),
    StateCategory.DONE: (
        lambda state: _name(state) == "done",
        lambda state: state.type.lower() == "completed",
    ),
    StateCategory.BACKLOG: (
        lambda state: _name(state) in ("todo", "to do"),
        lambda state: state.type.lower() == "unstarted",
        lambda state: state.type.lower() == "backlog",
        lambda state: _name(state) == "backlog",
    ),
    StateCategory.CANCELED: (lambda state: state.type.lower() == "canceled",),
}

REQUIRED_CATEGORIES = (StateCategory.IN_PROGRESS, StateCategory.DONE, StateCategory.BACKLOG)


@dataclass
class ResolvedWorkflowStates:
    """The state ids the sync writes, resolved once per run."""

    in_progress: WorkflowState
    done: WorkflowState
    backlog: WorkflowState
    review: WorkflowState | None = None
    canceled: WorkflowState | None = None
    all_states: tuple[WorkflowState, ...] = ()

    def get(self, category: StateCategory) -> WorkflowState | None:
        """The resolved state for a category, if any."""
        return getattr(self, category.value)

    def category_of(self, state_id: str | None, state_type: str | None = None) -> StateCategory | None:
        """Classify a ticket's current state id.

        States other than the resolved ones are classified by their type, so
        a second "completed" state still counts as done.
        """
        if state_id is None:
            return None
        for category in StateCategory:
            state = self.get(category)
            if state is not None and state.id == state_id:
                return category
        if state_type is None:
            state_type = next((state.type for state in self.all_states if state.id == state_id), None)
        return {
            "completed": StateCategory.DONE,
            "canceled": StateCategory.CANCELED,
            "started": StateCategory.IN_PROGRESS,
            "unstarted": StateCategory.BACKLOG,
            "backlog": StateCategory.BACKLOG,
        }.get((state_type or "").lower())

    def is_closed(self, state_id: str | None, state_type: str | None = None) -> bool:
        """Whether a state is done or canceled."""
        return self.category_of(state_id, state_type) in (StateCategory.DONE, StateCategory.CANCELED)


def resolve_workflow_states(states: Iterable[WorkflowState]) -> ResolvedWorkflowStates:
    """Resolve the team's states by name and type heuristics.

    Raises:
        WorkflowStateResolutionError: If In Progress, Done or Backlog/Todo cannot be found.
    """
    states = tuple(states)
    resolved: dict[StateCategory, WorkflowState] = {}
    for category, matchers in CATEGORY_MATCHERS.items():
        for matcher in matchers:
            match = next((state for state in states if matcher(state)), None)
            if match is not None:
                resolved[category] = match
                break

    missing = [category.value for category in REQUIRED_CATEGORIES if category not in resolved]
    if missing:
        raise WorkflowStateResolutionError(missing, [state.name for state in states])

    if StateCategory.REVIEW not in resolved:
        logger.warning("No review workflow state found, merged pull requests will not move tickets to review")

    logger.info(
        "Resolved workflow states",
        **{category.value: state.name for category, state in resolved.items()},
    )
    return ResolvedWorkflowStates(
        in_progress=resolved[StateCategory.IN_PROGRESS],
        done=resolved[StateCategory.DONE],
        backlog=resolved[StateCategory.BACKLOG],
        review=resolved.get(StateCategory.REVIEW),
        canceled=resolved.get(StateCategory.CANCELED),
        all_states=states,
    )
