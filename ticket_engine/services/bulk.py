"""
Bulk Operation Orchestrator

Fans one logical action out to one mutation per ticket and reports once all
of them have settled. Items succeed or fail independently: a failed item is
rolled back on its own, succeeded items keep their change, and nothing is
rolled back in aggregate.
"""
import asyncio
from typing import Dict, Iterable, List

from ticket_engine.models.errors import TicketEngineError
from ticket_engine.models.results import BulkOperationResult
from ticket_engine.models.schemas import TicketDelta, TicketPriority, TicketStatus
from ticket_engine.services.dispatcher import MutationDispatcher
from ticket_engine.utils.logger import get_logger
from ticket_engine.utils.validators import (
    validate_delta,
    validate_merge_selection,
    validate_ticket_ids,
)

logger = get_logger(__name__)


class BulkOrchestrator:
    """Concurrent per-ticket fan-out over the mutation dispatcher"""

    def __init__(self, dispatcher: MutationDispatcher):
        self.dispatcher = dispatcher

    async def dispatch(self, ticket_ids: Iterable[str], delta: TicketDelta) -> BulkOperationResult:
        """
        Apply delta to every ticket, one concurrent request each

        Each item goes through optimistic apply as it is dispatched, so the
        list view updates before the batch finishes.

        Args:
            ticket_ids: Selected tickets (duplicates ignored)
            delta: Change applied to each ticket

        Returns:
            Per-ticket outcome, after every request settled

        Raises:
            ValidationError: Empty selection or invalid delta; nothing is sent
        """
        ids = validate_ticket_ids(ticket_ids)
        validate_delta(delta)

        outcomes = await asyncio.gather(
            *(self.dispatcher.dispatch(ticket_id, delta) for ticket_id in ids),
            return_exceptions=True
        )

        result = BulkOperationResult(total=len(ids))
        for ticket_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Bulk item {ticket_id} raised unexpectedly: {outcome!r}")
                result.failed[ticket_id] = str(outcome) or type(outcome).__name__
            elif outcome.ok:
                result.succeeded.append(ticket_id)
            else:
                result.failed[ticket_id] = str(outcome.error)

        self._log_result("Bulk update", result, delta)
        return result

    async def dispatch_batched(self, ticket_ids: Iterable[str], delta: TicketDelta) -> BulkOperationResult:
        """
        Apply delta through the service's single bulk endpoint

        Every ticket is applied optimistically up front and confirmed or
        rolled back from its per-item result. A failed request fails (and
        rolls back) every item. Tag additions need each ticket's current
        tags, so they go through the per-ticket path instead.
        """
        ids = validate_ticket_ids(ticket_ids)
        validate_delta(delta)
        if delta.is_tag_addition():
            logger.info(f"Tag addition for {len(ids)} ticket(s) sent per ticket")
            return await self.dispatch(ids, delta)

        reconciler = self.dispatcher.reconciler
        tokens: Dict[str, str] = {}
        for ticket_id in ids:
            pending = reconciler.apply_optimistic(ticket_id, delta)
            if pending is not None:
                tokens[ticket_id] = pending.token

        result = BulkOperationResult(total=len(ids))
        try:
            item_results = await self.dispatcher.client.bulk_update(ids, delta)
        except TicketEngineError as e:
            for ticket_id in ids:
                reconciler.rollback(tokens.get(ticket_id))
                result.failed[ticket_id] = str(e)
            self._log_result("Batched bulk update", result, delta)
            return result

        by_id = {item.ticket_id: item for item in item_results}
        for ticket_id in ids:
            item = by_id.get(ticket_id)
            if item is not None and item.success:
                reconciler.confirm(tokens.get(ticket_id), item.ticket)
                result.succeeded.append(ticket_id)
            else:
                reconciler.rollback(tokens.get(ticket_id))
                result.failed[ticket_id] = (item.error if item else None) or "Update failed"

        self._log_result("Batched bulk update", result, delta)
        return result

    @staticmethod
    def _log_result(label: str, result: BulkOperationResult, delta: TicketDelta) -> None:
        fields = ", ".join(delta.changed_fields())
        if result.ok:
            logger.info(f"{label} ({fields}) succeeded for {result.total} ticket(s)")
        else:
            logger.warning(
                f"{label} ({fields}): {len(result.succeeded)} succeeded, "
                f"{len(result.failed)} failed: {sorted(result.failed)}"
            )

    # ------------------------------------------------------------------ #
    # Bulk actions
    # ------------------------------------------------------------------ #
    async def set_status(self, ticket_ids: Iterable[str], status: TicketStatus) -> BulkOperationResult:
        return await self.dispatch(ticket_ids, TicketDelta(status=status))

    async def set_priority(self, ticket_ids: Iterable[str], priority: TicketPriority) -> BulkOperationResult:
        return await self.dispatch(ticket_ids, TicketDelta(priority=priority))

    async def add_tags(self, ticket_ids: Iterable[str], tags: List[str]) -> BulkOperationResult:
        return await self.dispatch(ticket_ids, TicketDelta(add_tags=list(tags or [])))

    async def assign(self, ticket_ids: Iterable[str], agent_id: str) -> BulkOperationResult:
        return await self.dispatch(ticket_ids, TicketDelta(assigned_agent=agent_id))

    async def escalate(self, ticket_ids: Iterable[str]) -> BulkOperationResult:
        return await self.set_status(ticket_ids, TicketStatus.ESCALATED)

    @staticmethod
    def validate_merge_selection(ticket_ids: Iterable[str]) -> List[str]:
        """Merging needs at least two selected tickets"""
        return validate_merge_selection(ticket_ids)
