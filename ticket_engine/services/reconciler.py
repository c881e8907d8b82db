"""
Ticket Reconciler

Single writer of the cache store. Merges push events, optimistic mutations,
mutation results and list refetches into the store.

Rules:
- updated_at never decreases for a ticket (last writer wins by timestamp,
  not by arrival order)
- created events are de-duplicated by id and debounce a list refetch
- messages are de-duplicated by message id
- every optimistic change is tracked as a PendingMutation; a rollback
  restores exactly the fields it replaced
- an event reporting the values of a pending mutation confirms it

All methods except the refresh task run synchronously inside one event loop
step, so no two writes interleave.
"""
import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from ticket_engine.config import get_settings
from ticket_engine.models.errors import StaleEventError, TicketEngineError
from ticket_engine.models.lifecycle import is_reopen
from ticket_engine.models.results import PendingMutation
from ticket_engine.models.schemas import (
    MUTABLE_FIELDS,
    EventType,
    Ticket,
    TicketDelta,
    TicketEvent,
    TicketFilter,
)
from ticket_engine.services.cache_store import CacheStore, RefreshTimer
from ticket_engine.utils.logger import get_logger

logger = get_logger(__name__)

RefreshFunc = Callable[[str], Awaitable[None]]


class EventResult(str, Enum):
    """What applying an inbound event did"""
    APPLIED = "applied"
    CONFIRMED = "confirmed"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    MALFORMED = "malformed"


class Reconciler:
    """
    Keeps the cache store consistent with events and mutations.

    Args:
        store: Shared cache store
        refresh: Coroutine function refetching one filter key's list
        debounce_seconds: Debounce window for refetches
    """

    def __init__(
        self,
        store: CacheStore,
        refresh: Optional[RefreshFunc] = None,
        debounce_seconds: Optional[float] = None
    ):
        self.store = store
        self._refresh = refresh
        if debounce_seconds is None:
            debounce_seconds = get_settings().refresh_debounce_seconds
        self.debounce_seconds = debounce_seconds

        self._pending: Dict[str, PendingMutation] = {}
        # (ticket_id, field) -> pending tokens, oldest first
        self._chains: Dict[Tuple[str, str], List[str]] = {}
        self._filters: Dict[str, TicketFilter] = {}
        self._refresh_tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------ #
    # Filters
    # ------------------------------------------------------------------ #
    def register_filter(self, ticket_filter: TicketFilter) -> str:
        key = ticket_filter.key()
        self._filters[key] = ticket_filter
        return key

    def unregister_filter(self, filter_key: str) -> None:
        self.cancel_refresh(filter_key)
        self._filters.pop(filter_key, None)

    def filter_for(self, filter_key: str) -> Optional[TicketFilter]:
        return self._filters.get(filter_key)

    def _matching_keys(self, ticket: Ticket) -> List[str]:
        return [key for key, flt in self._filters.items() if flt.matches(ticket)]

    def _check_membership(self, ticket: Ticket) -> None:
        """Refetch loaded lists whose membership of ticket looks out of date"""
        for key, flt in self._filters.items():
            ids = self.store.get(key)
            if ids is None:
                continue
            if (ticket.id in ids) != flt.matches(ticket):
                self.schedule_refresh(key)

    # ------------------------------------------------------------------ #
    # Pending mutations
    # ------------------------------------------------------------------ #
    def pending(self, token: str) -> Optional[PendingMutation]:
        return self._pending.get(token)

    def pending_for(self, ticket_id: str) -> List[PendingMutation]:
        return [p for p in self._pending.values() if p.ticket_id == ticket_id]

    def has_pending(self, ticket_id: str, field: Optional[str] = None) -> bool:
        if field is not None:
            return bool(self._chains.get((ticket_id, field)))
        return any(p.ticket_id == ticket_id for p in self._pending.values())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _release(self, pending: PendingMutation, restore_fields: Iterable[str] = ()) -> Dict[str, Any]:
        """
        Drop a pending mutation from its field chains.

        For each field in restore_fields, either the next mutation on the
        field inherits this one's snapshot, or (if this mutation is the
        newest) the snapshot value is returned as a cache write.
        """
        restore_fields = set(restore_fields)
        writes: Dict[str, Any] = {}
        for field in pending.values:
            chain = self._chains.get((pending.ticket_id, field), [])
            if pending.token not in chain:
                continue
            position = chain.index(pending.token)
            if field in restore_fields:
                if position + 1 < len(chain):
                    successor = self._pending[chain[position + 1]]
                    successor.snapshot[field] = pending.snapshot[field]
                    if field in pending.superseded:
                        successor.superseded.add(field)
                else:
                    writes[field] = pending.snapshot[field]
            elif position == 0 and position + 1 < len(chain):
                # Successor's base becomes the now-authoritative value
                self._pending[chain[position + 1]].snapshot[field] = pending.values[field]
            chain.remove(pending.token)
            if not chain:
                del self._chains[(pending.ticket_id, field)]
        self._pending.pop(pending.token, None)
        return writes

    def _write_fields(self, ticket_id: str, writes: Dict[str, Any]) -> None:
        if not writes:
            return
        cached = self.store.get_detail(ticket_id)
        if cached is not None:
            self.store.upsert_detail(cached.with_values(writes))

    def _overlay_pending(
        self,
        incoming: Ticket,
        reported_fields: Optional[Iterable[str]] = None
    ) -> Tuple[Ticket, bool]:
        """
        Reconcile a server-reported ticket with outstanding mutations.

        Pending mutations whose every field is reported with the proposed
        value are confirmed and dropped. Remaining pending fields keep their
        optimistic value; if the server reported a different value, the
        oldest mutation's snapshot moves forward to it.

        Returns:
            (ticket to store, whether any mutation was confirmed)
        """
        reported = set(reported_fields) if reported_fields is not None else set(MUTABLE_FIELDS)
        confirmed = False
        for pending in self.pending_for(incoming.id):
            if set(pending.values) <= reported and pending.is_confirmed_by(incoming):
                self._release(pending)
                confirmed = True
                logger.debug(f"Pending mutation {pending.token} confirmed for {incoming.id}")

        overlay: Dict[str, Any] = {}
        for (ticket_id, field), chain in list(self._chains.items()):
            if ticket_id != incoming.id:
                continue
            oldest = self._pending[chain[0]]
            newest = self._pending[chain[-1]]
            if field in reported:
                oldest.snapshot[field] = getattr(incoming, field)
                oldest.superseded.add(field)
            overlay[field] = newest.values[field]

        if overlay:
            incoming = incoming.with_values(overlay)
        return incoming, confirmed

    def _store_reconciled(self, ticket: Ticket, cached: Optional[Ticket]) -> bool:
        """Write ticket; silent when only updated_at changed. Returns True if visible"""
        if cached is not None and ticket.visible_equals(cached):
            self.store.upsert_detail(ticket, notify=False)
            return False
        if cached is not None and is_reopen(cached.status, ticket.status):
            logger.info(f"Ticket {ticket.id} reopened ({cached.status.value} -> {ticket.status.value})")
        self.store.upsert_detail(ticket)
        return True

    # ------------------------------------------------------------------ #
    # Optimistic apply / confirm / rollback
    # ------------------------------------------------------------------ #
    def apply_optimistic(self, ticket_id: str, delta: TicketDelta) -> Optional[PendingMutation]:
        """
        Write a mutation's expected effect before the service confirms it

        Args:
            ticket_id: Ticket being changed
            delta: Proposed change (already validated)

        Returns:
            The registered PendingMutation, or None if the ticket is not cached
        """
        cached = self.store.get_detail(ticket_id)
        if cached is None:
            logger.debug(f"Ticket {ticket_id} not cached, skipping optimistic apply")
            return None

        values = delta.resolve(cached)
        pending = PendingMutation(
            token=uuid4().hex,
            ticket_id=ticket_id,
            values=values,
            snapshot=cached.field_values(values),
        )
        self._pending[pending.token] = pending
        for field in values:
            self._chains.setdefault((ticket_id, field), []).append(pending.token)

        self.store.upsert_detail(cached.with_values(values))
        logger.debug(f"Optimistically applied {sorted(values)} to ticket {ticket_id}")
        return pending

    def confirm(self, token: Optional[str], server_ticket: Optional[Ticket] = None) -> None:
        """
        Mark a mutation as accepted by the service

        Args:
            token: Pending mutation token (None if nothing was applied)
            server_ticket: Ticket returned by the service, merged if not older
                than the cache
        """
        pending = self._pending.get(token) if token else None
        ticket_id = pending.ticket_id if pending else (server_ticket.id if server_ticket else None)
        if ticket_id is None:
            return
        cached = self.store.get_detail(ticket_id)
        server_older = (
            server_ticket is not None
            and cached is not None
            and server_ticket.updated_at < cached.updated_at
        )

        if pending is not None:
            # A newer event already overrode fields of this write
            restore = pending.superseded if server_older else ()
            self._write_fields(ticket_id, self._release(pending, restore))

        if server_ticket is not None and not server_older:
            merged, _ = self._overlay_pending(server_ticket)
            self._store_reconciled(merged, self.store.get_detail(ticket_id))
            self._check_membership(merged)

    def rollback(self, token: Optional[str]) -> bool:
        """
        Revert an optimistic change after the service rejected it

        Returns:
            True if cache state was restored
        """
        pending = self._pending.get(token) if token else None
        if pending is None:
            return False
        writes = self._release(pending, pending.values)
        self._write_fields(pending.ticket_id, writes)
        logger.warning(f"Rolled back {sorted(pending.values)} on ticket {pending.ticket_id}")
        return True

    def discard_pending(self, ticket_id: str) -> int:
        """Forget every pending mutation of a ticket without writing"""
        pendings = self.pending_for(ticket_id)
        for pending in pendings:
            self._release(pending)
        return len(pendings)

    # ------------------------------------------------------------------ #
    # Inbound events
    # ------------------------------------------------------------------ #
    def apply_event(
        self,
        event: Union[TicketEvent, Dict[str, Any]],
        filter_key: Optional[str] = None
    ) -> EventResult:
        """
        Merge one push event into the cache

        Args:
            event: Parsed event or raw payload
            filter_key: Subscription the event arrived on (None = route by
                filter match)

        Returns:
            What the event did; malformed and stale events are dropped
        """
        if not isinstance(event, TicketEvent):
            try:
                event = TicketEvent.model_validate(event)
            except PydanticValidationError as e:
                logger.warning(f"Dropping malformed ticket event: {e.error_count()} error(s)")
                return EventResult.MALFORMED

        logger.info(f"Received ticket event {event.type.value} for {event.ticket_id}")
        try:
            if event.type == EventType.CREATED:
                return self._apply_created(event, filter_key)
            if event.type == EventType.MESSAGE_ADDED:
                return self._apply_message(event)
            return self._apply_update(event)
        except StaleEventError as e:
            logger.debug(f"Discarding stale event: {e}")
            return EventResult.STALE

    def _apply_created(self, event: TicketEvent, filter_key: Optional[str]) -> EventResult:
        if event.ticket is None:
            keys = [filter_key] if filter_key else list(self._filters)
            for key in keys:
                self.schedule_refresh(key)
            return EventResult.IGNORED

        keys = [filter_key] if filter_key else self._matching_keys(event.ticket)
        result = EventResult.DUPLICATE
        cached = self.store.get_detail(event.ticket_id)
        if cached is None or event.ticket.updated_at > cached.updated_at:
            merged, _ = self._overlay_pending(event.ticket)
            if cached is None:
                self.store.upsert_detail(merged, notify=False)
            elif self._store_reconciled(merged, cached):
                result = EventResult.APPLIED

        ticket = self.store.get_detail(event.ticket_id)
        for key in keys:
            # Unloaded lists stay absent; the refetch brings the ticket in
            if self.store.get(key) is not None and self.store.prepend_to_list(key, ticket):
                result = EventResult.APPLIED
            self.schedule_refresh(key)
        if cached is None and result == EventResult.DUPLICATE:
            result = EventResult.APPLIED
        return result

    def _apply_update(self, event: TicketEvent) -> EventResult:
        cached = self.store.get_detail(event.ticket_id)
        if event.ticket is not None:
            incoming = event.ticket
            reported = None
        else:
            # Patch-style event: only the named fields are reported
            if cached is None:
                return EventResult.IGNORED
            patch: Dict[str, Any] = {}
            if event.new_status is not None:
                patch["status"] = event.new_status
            if event.assigned_to is not None:
                patch["assigned_agent"] = event.assigned_to
            if not patch or event.timestamp is None:
                logger.warning(f"Event for {event.ticket_id} has no usable patch, ignoring")
                return EventResult.IGNORED
            incoming = cached.with_values(dict(patch, updated_at=event.timestamp))
            reported = list(patch)

        if cached is not None and incoming.updated_at <= cached.updated_at:
            raise StaleEventError(
                f"updatedAt {incoming.updated_at.isoformat()} is not newer than "
                f"cached {cached.updated_at.isoformat()}",
                ticket_id=event.ticket_id
            )

        merged, confirmed = self._overlay_pending(incoming, reported)
        if cached is None:
            self.store.upsert_detail(merged, notify=False)
        else:
            self._store_reconciled(merged, cached)
        self._check_membership(merged)
        return EventResult.CONFIRMED if confirmed else EventResult.APPLIED

    def _apply_message(self, event: TicketEvent) -> EventResult:
        if event.message is None:
            return self._apply_update(event)

        cached = self.store.get_detail(event.ticket_id)
        if cached is None:
            return EventResult.IGNORED
        if event.message.id in cached.message_ids():
            return EventResult.DUPLICATE

        updates: Dict[str, Any] = {"messages": list(cached.messages) + [event.message]}
        timestamp = event.timestamp or event.message.created_at
        if timestamp is not None and timestamp > cached.updated_at:
            updates["updated_at"] = timestamp
        self.store.upsert_detail(cached.with_values(updates))
        return EventResult.APPLIED

    # ------------------------------------------------------------------ #
    # Server snapshots
    # ------------------------------------------------------------------ #
    def apply_list(self, filter_key: str, tickets: Iterable[Ticket]) -> None:
        """
        Store a refetched list without regressing newer cached details
        """
        reconciled = []
        for ticket in tickets:
            cached = self.store.get_detail(ticket.id)
            if cached is not None and cached.updated_at > ticket.updated_at:
                reconciled.append(cached)
                continue
            merged, _ = self._overlay_pending(ticket)
            reconciled.append(merged)
        self.store.set_list(filter_key, reconciled)

    def apply_detail(self, ticket: Ticket) -> Ticket:
        """Store a fetched detail record unless the cache is newer"""
        cached = self.store.get_detail(ticket.id)
        if cached is not None and cached.updated_at > ticket.updated_at:
            return cached
        merged, _ = self._overlay_pending(ticket)
        self._store_reconciled(merged, cached)
        return merged

    def apply_merge(self, merged_ticket: Ticket, deleted_ids: Iterable[str]) -> None:
        """Drop merged-away tickets and store the surviving target"""
        for ticket_id in deleted_ids:
            if ticket_id == merged_ticket.id:
                continue
            self.discard_pending(ticket_id)
            self.store.remove_ticket(ticket_id)
        stored = self.apply_detail(merged_ticket)
        self._check_membership(stored)

    # ------------------------------------------------------------------ #
    # Debounced refresh
    # ------------------------------------------------------------------ #
    def schedule_refresh(self, filter_key: str) -> Optional[RefreshTimer]:
        """
        Open or restart the debounce window for filter_key

        Must be called from the running event loop.
        """
        if self._refresh is None:
            return None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, refresh of {filter_key} not scheduled")
            return None
        return self.store.arm_timer(
            filter_key,
            self.debounce_seconds,
            lambda: self._fire_refresh(filter_key)
        )

    def _fire_refresh(self, filter_key: str) -> None:
        self.store.fire_timer(filter_key)
        previous = self._refresh_tasks.get(filter_key)
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.get_running_loop().create_task(self._run_refresh(filter_key))
        self._refresh_tasks[filter_key] = task

        def forget(done: asyncio.Task) -> None:
            if self._refresh_tasks.get(filter_key) is done:
                del self._refresh_tasks[filter_key]

        task.add_done_callback(forget)

    async def _run_refresh(self, filter_key: str) -> None:
        logger.debug(f"Debounced refresh firing for {filter_key}")
        try:
            await self._refresh(filter_key)
        except asyncio.CancelledError:
            logger.debug(f"Refresh of {filter_key} cancelled")
            raise
        except TicketEngineError as e:
            logger.error(f"Debounced refresh failed for {filter_key}: {e}")
        except Exception as e:
            logger.error(f"Debounced refresh crashed for {filter_key}: {e}")

    def refresh_in_flight(self, filter_key: str) -> bool:
        task = self._refresh_tasks.get(filter_key)
        return task is not None and not task.done()

    def cancel_refresh(self, filter_key: str) -> bool:
        """Clear the timer and any running refresh of filter_key"""
        cancelled = self.store.clear_timer(filter_key)
        task = self._refresh_tasks.pop(filter_key, None)
        if task is not None and not task.done():
            task.cancel()
            cancelled = True
        return cancelled

    def teardown(self) -> None:
        """Cancel every timer and refresh; pending mutations are forgotten"""
        self.store.clear_timers()
        for task in list(self._refresh_tasks.values()):
            if not task.done():
                task.cancel()
        self._refresh_tasks.clear()
        self._pending.clear()
        self._chains.clear()
        self._filters.clear()
