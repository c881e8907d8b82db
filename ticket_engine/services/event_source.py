"""
Ticket Event Source

The push transport is external; the engine only sees an ordered stream of
change notifications plus a connected flag. LocalEventSource is the
in-process implementation: a transport adapter feeds it raw payloads (or an
async iterator of them) and it fans them out to filtered subscribers.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ticket_engine.models.schemas import EventType, TicketEvent
from ticket_engine.utils.logger import get_logger

logger = get_logger(__name__)

EventCallback = Callable[[TicketEvent], None]
FilterPredicate = Callable[[TicketEvent], bool]
ConnectionListener = Callable[[bool], None]


@dataclass
class TicketEventHandlers:
    """One callback per event type; missing callbacks ignore that type"""
    on_created: Optional[EventCallback] = None
    on_updated: Optional[EventCallback] = None
    on_status_changed: Optional[EventCallback] = None
    on_message_added: Optional[EventCallback] = None

    def handler_for(self, event_type: EventType) -> Optional[EventCallback]:
        return {
            EventType.CREATED: self.on_created,
            EventType.UPDATED: self.on_updated,
            EventType.STATUS_CHANGED: self.on_status_changed,
            EventType.MESSAGE_ADDED: self.on_message_added,
        }[event_type]


class EventSource(ABC):
    """Interface the engine consumes"""

    @abstractmethod
    def subscribe(
        self,
        filter_predicate: FilterPredicate,
        handlers: TicketEventHandlers
    ) -> Callable[[], None]:
        """Deliver matching events to handlers; returns an unsubscribe callable"""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether events are currently being delivered"""

    @abstractmethod
    def on_connection_change(self, listener: ConnectionListener) -> Callable[[], None]:
        """Observe connected flips; returns a callable removing the listener"""


@dataclass
class _Subscription:
    predicate: FilterPredicate
    handlers: TicketEventHandlers


class LocalEventSource(EventSource):
    """
    In-process event source with per-connection FIFO delivery.

    Events emitted while disconnected are lost; consumers see a gap.
    """

    def __init__(self, connected: bool = True):
        self._connected = connected
        self._subscriptions: List[_Subscription] = []
        self._connection_listeners: List[ConnectionListener] = []

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        filter_predicate: FilterPredicate,
        handlers: TicketEventHandlers
    ) -> Callable[[], None]:
        subscription = _Subscription(filter_predicate, handlers)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def on_connection_change(self, listener: ConnectionListener) -> Callable[[], None]:
        self._connection_listeners.append(listener)

        def remove() -> None:
            if listener in self._connection_listeners:
                self._connection_listeners.remove(listener)

        return remove

    def set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info(f"Event source {'connected' if connected else 'disconnected'}")
        for listener in list(self._connection_listeners):
            try:
                listener(connected)
            except Exception as e:
                logger.error(f"Connection listener failed: {e}")

    def emit(self, payload: Union[TicketEvent, Dict[str, Any]]) -> int:
        """
        Deliver one event to every matching subscriber

        Args:
            payload: Parsed event or raw wire payload

        Returns:
            Number of handlers invoked
        """
        if not self._connected:
            logger.debug("Event source disconnected, event lost")
            return 0

        if isinstance(payload, TicketEvent):
            event = payload
        else:
            try:
                event = TicketEvent.model_validate(payload)
            except PydanticValidationError as e:
                logger.warning(f"Dropping malformed ticket event: {e.error_count()} error(s)")
                return 0

        delivered = 0
        for subscription in list(self._subscriptions):
            handler = subscription.handlers.handler_for(event.type)
            if handler is None:
                continue
            try:
                if not subscription.predicate(event):
                    continue
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Ticket event handler failed for {event.ticket_id}: {e}")
        return delivered

    async def consume(self, stream: AsyncIterator[Dict[str, Any]]) -> int:
        """
        Pump a transport stream until it ends

        The source counts as connected while the stream is open.

        Args:
            stream: Async iterator of raw payloads

        Returns:
            Number of payloads read
        """
        count = 0
        self.set_connected(True)
        try:
            async for payload in stream:
                count += 1
                self.emit(payload)
        finally:
            self.set_connected(False)
        return count
