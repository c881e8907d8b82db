"""
Error taxonomy for the ticket engine

Every network-path failure is converted into one of these kinds before it
reaches application state. Bulk and merge failures travel inside structured
results; only ValidationError is raised to the caller, before dispatch.
"""
from typing import Dict, Optional


class TicketEngineError(Exception):
    """Base class for all engine errors"""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        ticket_id: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message)
        self.message = message
        self.ticket_id = ticket_id
        self.status_code = status_code

    def __str__(self) -> str:
        if self.ticket_id:
            return f"{self.message} (ticket {self.ticket_id})"
        return self.message


class TransientNetworkError(TicketEngineError):
    """Mutation call failed due to connectivity; the operator may retry"""

    retryable = True


class ValidationError(TicketEngineError):
    """Malformed delta or selection, or a request the service rejected"""


class PartialBatchFailure(TicketEngineError):
    """Some identifiers of a bulk operation failed while others succeeded"""

    def __init__(self, failures: Dict[str, str], total: int):
        super().__init__(f"{len(failures)} of {total} ticket(s) failed")
        self.failures = dict(failures)
        self.total = total


class ConflictStateError(TicketEngineError):
    """Merge cannot proceed from the current conflict-review state"""


class StaleEventError(TicketEngineError):
    """Inbound record is not newer than the cached state; discarded internally"""
