"""
Ticket engine services
"""
from .cache_store import CacheStore, CacheChange, RefreshTimer, TimerState
from .event_source import EventSource, LocalEventSource, TicketEventHandlers
from .mutation_client import TicketServiceClient
from .reconciler import Reconciler, EventResult
from .dispatcher import MutationDispatcher
from .bulk import BulkOrchestrator
from .merge import MergeWorkflow, MergeState, detect_conflicts
from .engine import TicketEngine

__all__ = [
    "CacheStore",
    "CacheChange",
    "RefreshTimer",
    "TimerState",
    "EventSource",
    "LocalEventSource",
    "TicketEventHandlers",
    "TicketServiceClient",
    "Reconciler",
    "EventResult",
    "MutationDispatcher",
    "BulkOrchestrator",
    "MergeWorkflow",
    "MergeState",
    "detect_conflicts",
    "TicketEngine",
]
