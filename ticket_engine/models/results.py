"""
Structured outcomes returned to the view layer

These are ephemeral, scoped to a single invocation and never persisted.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, List, Optional, Set

from ticket_engine.models.errors import PartialBatchFailure, TicketEngineError
from ticket_engine.models.schemas import Ticket, TicketDelta, same_value


@dataclass
class PendingMutation:
    """
    Unconfirmed optimistic change.

    snapshot holds the pre-apply value of every field in values, so a
    rollback restores exactly what the optimistic apply replaced.
    """
    token: str
    ticket_id: str
    values: Dict[str, Any]
    snapshot: Dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(dt_timezone.utc))
    # fields whose snapshot a newer server report replaced
    superseded: Set[str] = field(default_factory=set)

    @property
    def fields(self) -> List[str]:
        return list(self.values)

    def is_confirmed_by(self, ticket: Ticket) -> bool:
        """Whether ticket already reports every value this mutation proposed"""
        return all(same_value(f, getattr(ticket, f), v) for f, v in self.values.items())


@dataclass
class MutationOutcome:
    """Result of a single dispatched mutation"""
    ticket_id: str
    delta: TicketDelta
    ticket: Optional[Ticket] = None
    error: Optional[TicketEngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        """True when the operator should be offered a retry"""
        return self.error is not None and self.error.retryable


@dataclass
class BulkOperationResult:
    """Aggregate outcome of a bulk operation"""
    total: int
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial_failure(self) -> Optional[PartialBatchFailure]:
        if not self.failed:
            return None
        return PartialBatchFailure(self.failed, self.total)


@dataclass
class MergeOutcome:
    """Result of confirming a merge"""
    target_id: str
    source_ids: List[str]
    ticket: Optional[Ticket] = None
    deleted_ticket_ids: List[str] = field(default_factory=list)
    error: Optional[TicketEngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None
