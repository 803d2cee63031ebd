"""Type hints for the synchronize module."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class ClosureConfirmationOracle(Protocol):
    """Decides whether an issue with a merged fix is waiting on its reporter.

    Consulted by the completion sync when a pull request is merged but its
    issue is still open.
    """

    async def is_waiting_for_confirmation(self, issue_number: int) -> bool: ...
