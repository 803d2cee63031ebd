"""Linear implementation of the tracker capabilities over its GraphQL API."""

from typing import Any

import httpx
import structlog

from ticket_sync_manager.tracker.abc import OpenTicketLister, TicketReader, TicketWriter, UserDirectory, WorkflowStateReader
from ticket_sync_manager.tracker.exceptions import TrackerRequestError
from ticket_sync_manager.tracker.models import Ticket, TrackerUser, WorkflowState

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

LINEAR_API_URL = "https://api.linear.app/graphql"

_TICKET_FIELDS = """
    id
    identifier
    title
    description
    state { id name type }
    assignee { id }
"""

GET_TICKET_QUERY = f"""
query GetTicket($id: String!) {{
    issue(id: $id) {{ {_TICKET_FIELDS} }}
}}
"""

UPDATE_TICKET_MUTATION = f"""
mutation UpdateTicket($id: String!, $input: IssueUpdateInput!) {{
    issueUpdate(id: $id, input: $input) {{
        success
        issue {{ {_TICKET_FIELDS} }}
    }}
}}
"""

WORKFLOW_STATES_QUERY = """
query WorkflowStates($teamId: ID!) {
    workflowStates(filter: { team: { id: { eq: $teamId } } }, first: 100) {
        nodes { id name type }
    }
}
"""

OPEN_TICKETS_QUERY = f"""
query OpenTickets($teamId: ID!, $cursor: String) {{
    issues(
        first: 100
        after: $cursor
        filter: {{
            team: {{ id: {{ eq: $teamId }} }}
            state: {{ type: {{ nin: ["completed", "canceled"] }} }}
        }}
    ) {{
        pageInfo {{ hasNextPage endCursor }}
        nodes {{ {_TICKET_FIELDS} }}
    }}
}}
"""

USERS_QUERY = """
query Users($cursor: String) {
    users(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes { id name email }
    }
}
"""


def ticket_from_node(node: dict[str, Any]) -> Ticket:
    """Build a ticket from a GraphQL issue node."""
    state = node.get("state") or {}
    assignee = node.get("assignee") or {}
    return Ticket(
        id=node["id"],
        identifier=node.get("identifier") or "",
        title=node.get("title") or "",
        description=node.get("description"),
        state_id=state.get("id"),
        state_name=state.get("name"),
        state_type=state.get("type"),
        assignee_id=assignee.get("id"),
    )


class LinearTicketClient(TicketReader, TicketWriter, WorkflowStateReader, OpenTicketLister, UserDirectory):
    """Tracker client for one Linear team."""

    def __init__(
        self,
        api_key: str,
        team_id: str,
        api_url: str = LINEAR_API_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the client; an ``httpx.AsyncClient`` is created when none is given."""
        self.team_id = team_id
        self.api_url = api_url
        self._headers = {"Authorization": api_key, "Content-Type": "application/json"}
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http_client = http_client is None

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> "LinearTicketClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a GraphQL operation and return its ``data``.

        Raises:
            TrackerRequestError: On transport failure, a non-2xx status or GraphQL errors.
        """
        try:
            resp = await self._http_client.post(self.api_url, json={"query": query, "variables": variables or {}}, headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TrackerRequestError(f"Tracker API returned {exc.response.status_code}: {exc.response.text[:500]}") from exc
        except httpx.HTTPError as exc:
            raise TrackerRequestError(f"Tracker API request failed: {exc}") from exc

        payload = resp.json()
        if payload.get("errors"):
            messages = "; ".join(str(error.get("message", error)) for error in payload["errors"])
            raise TrackerRequestError(f"Tracker API returned errors: {messages}", errors=payload["errors"])
        return payload.get("data") or {}

    async def _paginate(self, query: str, root: str, variables: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        nodes: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            data = await self.execute(query, {**(variables or {}), "cursor": cursor})
            connection = data.get(root) or {}
            nodes.extend(connection.get("nodes") or [])
            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                return nodes
            cursor = page_info.get("endCursor")

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        data = await self.execute(GET_TICKET_QUERY, {"id": ticket_id})
        node = data.get("issue")
        return ticket_from_node(node) if node else None

    async def update_ticket(self, ticket_id: str, state_id: str | None = None, assignee_id: str | None = None, clear_assignee: bool = False) -> Ticket:
        update_input: dict[str, Any] = {}
        if state_id is not None:
            update_input["stateId"] = state_id
        if assignee_id is not None:
            update_input["assigneeId"] = assignee_id
        elif clear_assignee:
            update_input["assigneeId"] = None
        if not update_input:
            raise ValueError("update_ticket needs a state or assignee change")

        data = await self.execute(UPDATE_TICKET_MUTATION, {"id": ticket_id, "input": update_input})
        result = data.get("issueUpdate") or {}
        if not result.get("success") or not result.get("issue"):
            raise TrackerRequestError(f"Tracker rejected the update of ticket {ticket_id}")
        logger.debug("Updated ticket", ticket_id=ticket_id, fields=sorted(update_input))
        return ticket_from_node(result["issue"])

    async def list_workflow_states(self) -> list[WorkflowState]:
        data = await self.execute(WORKFLOW_STATES_QUERY, {"teamId": self.team_id})
        nodes = (data.get("workflowStates") or {}).get("nodes") or []
        return [WorkflowState(id=node["id"], name=node["name"], type=node["type"]) for node in nodes]

    async def list_open_tickets(self) -> list[Ticket]:
        nodes = await self._paginate(OPEN_TICKETS_QUERY, "issues", {"teamId": self.team_id})
        logger.info("Fetched open tickets", count=len(nodes))
        return [ticket_from_node(node) for node in nodes]

    async def list_users(self) -> list[TrackerUser]:
        nodes = await self._paginate(USERS_QUERY, "users")
        return [TrackerUser(id=node["id"], name=node.get("name") or "", email=node.get("email")) for node in nodes]
