"""Pydantic models for tracker tickets, workflow states and users."""

from pydantic import BaseModel


class WorkflowState(BaseModel):
    """A workflow state of the tracker team."""

    id: str
    name: str
    type: str


class Ticket(BaseModel):
    """A tracker ticket with its current state and single assignee."""

    id: str
    identifier: str = ""
    title: str = ""
    description: str | None = None
    state_id: str | None = None
    state_name: str | None = None
    state_type: str | None = None
    assignee_id: str | None = None

    @property
    def label(self) -> str:
        """Human identifier when known, else the id."""
        return self.identifier or self.id

    @property
    def text(self) -> str:
        """Title and description joined, as scanned for links."""
        return f"{self.title}\n{self.description or ''}"


class TrackerUser(BaseModel):
    """A member of the tracker workspace."""

    id: str
    name: str = ""
    email: str | None = None
