"""
Ticket Engine

Composition root exposed to the view layer. Owns one cache store, the
reconciler writing it, the service client, the event source and the bulk
orchestrator for the lifetime of a session.

Usage:
    async with TicketEngine() as engine:
        key = engine.watch(TicketFilter(statuses={TicketStatus.OPEN}))
        await engine.load(key)
        engine.get_visible_tickets(key)
"""
from typing import Callable, Dict, Iterable, List, Literal, Optional

from ticket_engine.models.errors import TicketEngineError
from ticket_engine.models.results import BulkOperationResult, MergeOutcome, MutationOutcome
from ticket_engine.models.schemas import (
    EventType,
    MergeOptions,
    Ticket,
    TicketDelta,
    TicketEvent,
    TicketFilter,
)
from ticket_engine.services.bulk import BulkOrchestrator
from ticket_engine.services.cache_store import CacheListener, CacheStore
from ticket_engine.services.dispatcher import MutationDispatcher
from ticket_engine.services.event_source import EventSource, LocalEventSource, TicketEventHandlers
from ticket_engine.services.merge import MergeWorkflow
from ticket_engine.services.mutation_client import TicketServiceClient
from ticket_engine.services.reconciler import Reconciler
from ticket_engine.utils.logger import get_logger
from ticket_engine.utils.validators import validate_merge_resolutions, validate_merge_selection

logger = get_logger(__name__)


class TicketEngine:
    """
    Ticket collaboration state engine

    Args:
        client: Ticket service client (default from settings)
        event_source: Push event source (default in-process source)
        store: Cache store (default new store)
        debounce_seconds: Refresh debounce window (default from settings)
    """

    def __init__(
        self,
        client: Optional[TicketServiceClient] = None,
        event_source: Optional[EventSource] = None,
        store: Optional[CacheStore] = None,
        debounce_seconds: Optional[float] = None
    ):
        self.client = client or TicketServiceClient()
        self.event_source = event_source or LocalEventSource()
        self.store = store or CacheStore()
        self.reconciler = Reconciler(self.store, refresh=self.refresh, debounce_seconds=debounce_seconds)
        self.dispatcher = MutationDispatcher(self.reconciler, self.client)
        self.bulk = BulkOrchestrator(self.dispatcher)

        self._subscriptions: Dict[str, Callable[[], None]] = {}
        self._remove_connection_listener: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def init(self) -> "TicketEngine":
        self.store.init()
        self._remove_connection_listener = self.event_source.on_connection_change(
            self._on_connection_change
        )
        logger.info("Ticket engine started")
        return self

    def dispose(self) -> None:
        """Unsubscribe everything, cancel timers and drop cached state"""
        for unsubscribe in self._subscriptions.values():
            unsubscribe()
        self._subscriptions.clear()
        if self._remove_connection_listener is not None:
            self._remove_connection_listener()
            self._remove_connection_listener = None
        self.reconciler.teardown()
        self.store.dispose()
        logger.info("Ticket engine disposed")

    async def __aenter__(self) -> "TicketEngine":
        return self.init()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.dispose()

    @property
    def connected(self) -> bool:
        return self.event_source.connected

    def _on_connection_change(self, connected: bool) -> None:
        if not connected:
            logger.warning("Event stream lost, cached lists may be stale")
            return
        # Events during the gap are gone; refetch what is on screen
        for key in self._subscriptions:
            self.reconciler.schedule_refresh(key)

    # ------------------------------------------------------------------ #
    # Filters
    # ------------------------------------------------------------------ #
    def watch(self, ticket_filter: Optional[TicketFilter] = None) -> str:
        """
        Start receiving events for a filter

        Args:
            ticket_filter: Active filter (None = all tickets)

        Returns:
            Filter Key identifying the cached list
        """
        ticket_filter = ticket_filter or TicketFilter()
        key = self.reconciler.register_filter(ticket_filter)
        if key in self._subscriptions:
            return key

        def predicate(event: TicketEvent) -> bool:
            listed = event.ticket_id in (self.store.get(key) or [])
            if event.ticket is not None:
                return listed or ticket_filter.matches(event.ticket)
            if event.type == EventType.CREATED:
                return True
            return listed

        def handle(event: TicketEvent) -> None:
            self.reconciler.apply_event(event, filter_key=key)

        handlers = TicketEventHandlers(
            on_created=handle,
            on_updated=handle,
            on_status_changed=handle,
            on_message_added=handle
        )
        self._subscriptions[key] = self.event_source.subscribe(predicate, handlers)
        logger.info(f"Watching {key}")
        return key

    def unwatch(self, filter_key: str) -> None:
        """Stop receiving events for a filter and drop its list"""
        unsubscribe = self._subscriptions.pop(filter_key, None)
        if unsubscribe is not None:
            unsubscribe()
        self.reconciler.unregister_filter(filter_key)
        self.store.drop_list(filter_key)

    async def load(self, filter_key: str) -> List[Ticket]:
        """
        Fetch the list of a watched filter

        Raises:
            TicketEngineError: If the fetch failed after retries
        """
        await self.refresh(filter_key)
        return self.store.get_tickets(filter_key)

    async def refresh(self, filter_key: str) -> None:
        ticket_filter = self.reconciler.filter_for(filter_key)
        if ticket_filter is None:
            logger.debug(f"Filter {filter_key} no longer watched, skipping refresh")
            return
        tickets = await self.client.list_tickets(ticket_filter)
        self.reconciler.apply_list(filter_key, tickets)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def get_visible_tickets(self, filter_key: str) -> List[Ticket]:
        return self.store.get_tickets(filter_key)

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        return self.store.get_detail(ticket_id)

    async def load_detail(self, ticket_id: str) -> Ticket:
        return await self.dispatcher.load_detail(ticket_id)

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        """Observe cache changes; returns an unsubscribe callable"""
        return self.store.subscribe(listener)

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #
    async def dispatch_mutation(self, ticket_id: str, delta: TicketDelta) -> MutationOutcome:
        return await self.dispatcher.dispatch(ticket_id, delta)

    async def assign(self, ticket_id: str, agent_id: Optional[str]) -> MutationOutcome:
        return await self.dispatcher.dispatch(ticket_id, TicketDelta(assigned_agent=agent_id))

    async def dispatch_bulk(
        self,
        ticket_ids: Iterable[str],
        delta: TicketDelta,
        batched: bool = False
    ) -> BulkOperationResult:
        """
        Apply one delta to many tickets

        Args:
            ticket_ids: Selected tickets
            delta: Change applied to each
            batched: Use the service's bulk endpoint instead of one call per ticket

        Raises:
            ValidationError: Before any call, for an empty selection or delta
        """
        if batched:
            return await self.bulk.dispatch_batched(ticket_ids, delta)
        return await self.bulk.dispatch(ticket_ids, delta)

    def start_merge(
        self,
        source_ids: Iterable[str],
        options: Optional[MergeOptions] = None
    ) -> MergeWorkflow:
        return MergeWorkflow(source_ids, self.client, self.reconciler, options)

    async def dispatch_merge(
        self,
        source_ids: Iterable[str],
        target_id: str,
        options: Optional[MergeOptions] = None,
        resolutions: Optional[Dict[str, Literal["source", "target"]]] = None
    ) -> MergeOutcome:
        """
        Run a merge without interactive review

        Args:
            source_ids: Tickets merged away
            target_id: Surviving ticket
            options: Carry-over options
            resolutions: Field -> "source" | "target"; unlisted conflicts keep target

        Returns:
            Merge outcome; failures are reported in it, not raised

        Raises:
            ValidationError: Invalid selection or resolution, before any call
        """
        sources = validate_merge_selection(source_ids, target_id)
        resolutions = validate_merge_resolutions(resolutions)
        workflow = self.start_merge(sources, options)
        try:
            conflicts = await workflow.select_target(target_id)
        except TicketEngineError as e:
            logger.error(f"Merge into {target_id} aborted: {e}")
            return MergeOutcome(target_id=target_id, source_ids=sources, error=e)

        conflicting = {c.field for c in conflicts}
        for field, resolution in resolutions.items():
            if field in conflicting:
                workflow.resolve(field, resolution)
            else:
                logger.debug(f"No conflict on {field}, resolution ignored")
        return await workflow.confirm()
