"""
Mutation Dispatcher

The one path every operator mutation takes, single or bulk:

1. validate (ValidationError raised, nothing sent, nothing applied)
2. optimistic apply through the reconciler
3. remote call
4. confirm with the service's ticket, or roll back exactly

Network-path failures come back as a MutationOutcome carrying a
TicketEngineError; nothing from the transport layer is raised past here.
"""
import asyncio
from typing import Optional

import httpx

from ticket_engine.models.errors import TicketEngineError, TransientNetworkError
from ticket_engine.models.results import MutationOutcome
from ticket_engine.models.schemas import Ticket, TicketDelta
from ticket_engine.services.mutation_client import TicketServiceClient
from ticket_engine.services.reconciler import Reconciler
from ticket_engine.utils.logger import get_logger
from ticket_engine.utils.validators import validate_delta, validate_ticket_id

logger = get_logger(__name__)


class MutationDispatcher:
    """Optimistic single-ticket mutations"""

    def __init__(self, reconciler: Reconciler, client: TicketServiceClient):
        self.reconciler = reconciler
        self.client = client

    @property
    def store(self):
        return self.reconciler.store

    async def load_detail(self, ticket_id: str) -> Ticket:
        """
        Fetch a ticket and merge it into the cache

        Raises:
            TicketEngineError: If the fetch failed after retries
        """
        ticket = await self.client.get_ticket(ticket_id)
        return self.reconciler.apply_detail(ticket)

    async def dispatch(self, ticket_id: str, delta: TicketDelta) -> MutationOutcome:
        """
        Apply delta optimistically and send it to the service

        Args:
            ticket_id: Ticket to change
            delta: Proposed change

        Returns:
            Outcome with the confirmed ticket or the converted error

        Raises:
            ValidationError: Invalid id or delta (before any side effect)
        """
        ticket_id = validate_ticket_id(ticket_id)
        validate_delta(delta)

        current = self.store.get_detail(ticket_id)
        if current is None and delta.is_tag_addition():
            # Tag addition is sent as the full tag list, so the base is needed
            try:
                current = await self.load_detail(ticket_id)
            except TicketEngineError as e:
                logger.error(f"Could not load ticket {ticket_id} before tag addition: {e}")
                return MutationOutcome(ticket_id, delta, error=e)

        pending = self.reconciler.apply_optimistic(ticket_id, delta)
        token = pending.token if pending else None

        try:
            ticket = await self._send(ticket_id, delta, current)
        except TicketEngineError as e:
            self.reconciler.rollback(token)
            logger.error(f"Mutation of ticket {ticket_id} failed: {e}")
            return MutationOutcome(ticket_id, delta, error=e)
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
            self.reconciler.rollback(token)
            logger.error(f"Mutation of ticket {ticket_id} failed in transport: {e}")
            error = TransientNetworkError(str(e) or type(e).__name__, ticket_id=ticket_id)
            return MutationOutcome(ticket_id, delta, error=error)

        self.reconciler.confirm(token, ticket)
        logger.info(f"Ticket {ticket_id} updated ({', '.join(delta.changed_fields())})")
        return MutationOutcome(ticket_id, delta, ticket=self.store.get_detail(ticket_id) or ticket)

    async def _send(
        self,
        ticket_id: str,
        delta: TicketDelta,
        current: Optional[Ticket]
    ) -> Ticket:
        if delta.is_assignment_only() and delta.assigned_agent:
            return await self.client.assign_ticket(ticket_id, delta.assigned_agent)
        return await self.client.update_ticket(ticket_id, delta, current)
