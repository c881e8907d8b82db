"""
Ticket collaboration state engine

Keeps a client-held view of filtered ticket lists consistent with a live
event feed, optimistic mutations, bulk operations and ticket merges.
"""
from ticket_engine.services.engine import TicketEngine

__version__ = "1.0.0"

__all__ = ["TicketEngine", "__version__"]
