"""
Ticket Cache Store

Holds the last known ticket lists per Filter Key plus one detail record per
ticket id. Lists hold ids only, so a ticket visible under several filters is
stored once and every view sees the same record.

All writes are synchronous; listeners are notified after the write is
complete. The store also owns the per-filter-key refresh timers used by the
reconciler's debounce.
"""
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from ticket_engine.models.schemas import Ticket
from ticket_engine.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheChange:
    """Notification sent to store subscribers after a write"""
    filter_keys: FrozenSet[str] = frozenset()
    ticket_ids: FrozenSet[str] = frozenset()


CacheListener = Callable[[CacheChange], None]


class TimerState(str, Enum):
    """Debounce timer states"""
    IDLE = "idle"
    ARMED = "armed"
    FIRED = "fired"
    CANCELLED = "cancelled"


@dataclass
class RefreshTimer:
    """
    Debounce timer for one filter key.

    idle -> armed(deadline) -> fired | cancelled. Re-arming an armed timer
    cancels the pending handle and moves the deadline.
    """
    filter_key: str
    state: TimerState = TimerState.IDLE
    deadline: Optional[float] = None
    arm_count: int = 0
    handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def arm(self, delay: float, callback: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        if self.handle is not None:
            self.handle.cancel()
        self.deadline = loop.time() + delay
        self.handle = loop.call_later(delay, callback)
        self.state = TimerState.ARMED
        self.arm_count += 1

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None
        if self.state == TimerState.ARMED:
            self.state = TimerState.CANCELLED

    def mark_fired(self) -> None:
        self.handle = None
        self.state = TimerState.FIRED

    @property
    def armed(self) -> bool:
        return self.state == TimerState.ARMED


class CacheStore:
    """
    Shared ticket cache, constructed once per session by the engine.

    Usage:
        store = CacheStore()
        store.init()
        ...
        store.dispose()
    """

    def __init__(self):
        self._lists: Dict[str, List[str]] = {}
        self._details: Dict[str, Ticket] = {}
        self._dirty_since: Dict[str, float] = {}
        self._timers: Dict[str, RefreshTimer] = {}
        self._listeners: List[CacheListener] = []
        self._active = False

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def init(self) -> None:
        """Start a session with empty state"""
        self._clear()
        self._active = True
        logger.debug("Cache store initialised")

    def dispose(self) -> None:
        """Cancel all timers and drop all state and subscribers"""
        self.clear_timers()
        self._clear()
        self._listeners.clear()
        self._active = False
        logger.debug("Cache store disposed")

    @property
    def active(self) -> bool:
        return self._active

    def _clear(self) -> None:
        self._lists.clear()
        self._details.clear()
        self._dirty_since.clear()

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def get(self, filter_key: str) -> Optional[List[str]]:
        """Ordered ticket ids for a filter key, None if never loaded"""
        ids = self._lists.get(filter_key)
        return list(ids) if ids is not None else None

    def get_detail(self, ticket_id: str) -> Optional[Ticket]:
        return self._details.get(ticket_id)

    def get_tickets(self, filter_key: str) -> List[Ticket]:
        """Materialised list for a filter key, skipping ids without details"""
        return [
            self._details[ticket_id]
            for ticket_id in self._lists.get(filter_key, [])
            if ticket_id in self._details
        ]

    def list_keys(self) -> List[str]:
        return list(self._lists)

    def keys_containing(self, ticket_id: str) -> List[str]:
        return [key for key, ids in self._lists.items() if ticket_id in ids]

    def dirty_since(self, filter_key: str) -> Optional[float]:
        """Monotonic time of the last write affecting filter_key"""
        return self._dirty_since.get(filter_key)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def set_list(self, filter_key: str, tickets: Iterable[Ticket]) -> None:
        """Replace the list for filter_key and upsert every ticket's detail"""
        ids: List[str] = []
        for ticket in tickets:
            if ticket.id not in ids:
                ids.append(ticket.id)
            self._details[ticket.id] = ticket
        self._lists[filter_key] = ids

        affected = {filter_key}
        for ticket_id in ids:
            affected.update(self.keys_containing(ticket_id))
        self._mark_dirty(affected)
        self._notify(CacheChange(frozenset(affected), frozenset(ids)))

    def upsert_detail(self, ticket: Ticket, notify: bool = True) -> None:
        """Insert or replace the detail record of ticket"""
        self._details[ticket.id] = ticket
        affected = set(self.keys_containing(ticket.id))
        self._mark_dirty(affected)
        if notify:
            self._notify(CacheChange(frozenset(affected), frozenset({ticket.id})))

    def prepend_to_list(self, filter_key: str, ticket: Ticket) -> bool:
        """
        Put ticket at the head of filter_key's list.

        Returns:
            False (and writes nothing) if the id is already listed
        """
        ids = self._lists.setdefault(filter_key, [])
        if ticket.id in ids:
            return False
        ids.insert(0, ticket.id)
        self._details[ticket.id] = ticket
        affected = set(self.keys_containing(ticket.id))
        self._mark_dirty(affected)
        self._notify(CacheChange(frozenset(affected), frozenset({ticket.id})))
        return True

    def remove_ticket(self, ticket_id: str) -> None:
        """Remove a ticket's detail and every list entry"""
        affected = set(self.keys_containing(ticket_id))
        for key in affected:
            self._lists[key].remove(ticket_id)
        existed = self._details.pop(ticket_id, None) is not None
        if affected or existed:
            self._mark_dirty(affected)
            self._notify(CacheChange(frozenset(affected), frozenset({ticket_id})))

    def drop_list(self, filter_key: str) -> None:
        self._lists.pop(filter_key, None)
        self._dirty_since.pop(filter_key, None)

    def _mark_dirty(self, filter_keys: Iterable[str]) -> None:
        now = time.monotonic()
        for key in filter_keys:
            self._dirty_since[key] = now

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #
    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        """
        Register a change listener

        Returns:
            Callable removing the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: CacheChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Cache listener failed: {e}")

    # ------------------------------------------------------------------ #
    # Refresh timers
    # ------------------------------------------------------------------ #
    def timer(self, filter_key: str) -> Optional[RefreshTimer]:
        return self._timers.get(filter_key)

    def arm_timer(
        self,
        filter_key: str,
        delay: float,
        callback: Callable[[], None]
    ) -> RefreshTimer:
        """Open or restart the debounce window of filter_key"""
        timer = self._timers.get(filter_key)
        if timer is None:
            timer = RefreshTimer(filter_key)
            self._timers[filter_key] = timer
        timer.arm(delay, callback)
        return timer

    def fire_timer(self, filter_key: str) -> Optional[RefreshTimer]:
        """Mark the timer fired and forget its handle"""
        timer = self._timers.pop(filter_key, None)
        if timer is not None:
            timer.mark_fired()
        return timer

    def clear_timer(self, filter_key: str) -> bool:
        """Cancel and forget the timer of filter_key"""
        timer = self._timers.pop(filter_key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def clear_timers(self) -> int:
        count = 0
        for key in list(self._timers):
            if self.clear_timer(key):
                count += 1
        return count

    def pending_timer_keys(self) -> List[str]:
        return list(self._timers)
