"""Contains exceptions raised when talking to the tracker."""


class TrackerRequestError(Exception):
    """Raised when a tracker request fails or returns errors."""

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        """Initializes the exception with the failure message and any GraphQL errors."""
        super().__init__(message)
        self.errors = errors or []


class WorkflowStateResolutionError(Exception):
    """Raised when a required workflow state cannot be resolved for the team."""

    def __init__(self, missing: list[str], available: list[str]) -> None:
        """Initializes the exception with the missing categories and the states the team has."""
        super().__init__(
            f"Could not resolve required workflow states: {', '.join(missing)}. Available states: {', '.join(available) or 'none'}"
        )
        self.missing = missing
        self.available = available
