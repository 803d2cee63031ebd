"""Capability ABCs for tracker clients.

A tracker client declares the capabilities it supports by subclassing the
matching ABCs; callers check for them with ``isinstance`` when they are
constructed.
"""

from abc import ABC, abstractmethod

from ticket_sync_manager.tracker.models import Ticket, TrackerUser, WorkflowState


class TicketReader(ABC):
    """Reads single tickets."""

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        """Get a ticket by id, or None if it does not exist."""
        pass


class TicketWriter(ABC):
    """Writes ticket state and assignee."""

    @abstractmethod
    async def update_ticket(self, ticket_id: str, state_id: str | None = None, assignee_id: str | None = None, clear_assignee: bool = False) -> Ticket:
        """Update a ticket's state and/or assignee.

        ``assignee_id=None`` leaves the assignee untouched unless
        ``clear_assignee`` is set.
        """
        pass


class WorkflowStateReader(ABC):
    """Lists the workflow states of a team."""

    @abstractmethod
    async def list_workflow_states(self) -> list[WorkflowState]:
        """List the configured team's workflow states."""
        pass


class OpenTicketLister(ABC):
    """Lists tickets that are not completed or canceled."""

    @abstractmethod
    async def list_open_tickets(self) -> list[Ticket]:
        """List the team's open tickets, descriptions included."""
        pass


class UserDirectory(ABC):
    """Lists tracker users."""

    @abstractmethod
    async def list_users(self) -> list[TrackerUser]:
        """List workspace users with their emails."""
        pass
