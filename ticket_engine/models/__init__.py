"""
Data models for the ticket engine
"""

from ticket_engine.models.schemas import (
    # Enums
    TicketStatus,
    TicketPriority,
    EventType,

    # Tickets
    Ticket,
    TicketMessage,
    TicketDelta,
    TicketFilter,
    TicketEvent,

    # Merge
    MergeConflict,
    MergeOptions,
    MERGE_FIELDS,

    # Remote responses
    PerItemResult,
    MergeResponse,
)
from ticket_engine.models.results import (
    PendingMutation,
    MutationOutcome,
    BulkOperationResult,
    MergeOutcome,
)
from ticket_engine.models.errors import (
    TicketEngineError,
    TransientNetworkError,
    ValidationError,
    PartialBatchFailure,
    ConflictStateError,
    StaleEventError,
)

__all__ = [
    # Enums
    "TicketStatus",
    "TicketPriority",
    "EventType",

    # Tickets
    "Ticket",
    "TicketMessage",
    "TicketDelta",
    "TicketFilter",
    "TicketEvent",

    # Merge
    "MergeConflict",
    "MergeOptions",
    "MERGE_FIELDS",

    # Remote responses
    "PerItemResult",
    "MergeResponse",

    # Results
    "PendingMutation",
    "MutationOutcome",
    "BulkOperationResult",
    "MergeOutcome",

    # Errors
    "TicketEngineError",
    "TransientNetworkError",
    "ValidationError",
    "PartialBatchFailure",
    "ConflictStateError",
    "StaleEventError",
]
