"""
Ticket status lifecycle

Statuses move freely between open, in_progress, waiting and escalated; done
is reachable from anywhere and can be left again by reopening. Validity
rules, if any, belong to the remote service.
"""
from typing import Dict, FrozenSet

from ticket_engine.models.schemas import TicketStatus

TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    status: frozenset(TicketStatus) - {status} for status in TicketStatus
}

TERMINAL_STATUSES = frozenset({TicketStatus.DONE})


def can_transition(current: TicketStatus, target: TicketStatus) -> bool:
    """Any status may follow any other; a no-op transition is also allowed"""
    return current == target or target in TRANSITIONS[current]


def is_terminal(status: TicketStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_reopen(current: TicketStatus, target: TicketStatus) -> bool:
    """done -> anything else"""
    return is_terminal(current) and not is_terminal(target)
