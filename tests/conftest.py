"""
Pytest configuration and fixtures
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from ticket_engine.models.schemas import Ticket, TicketFilter, TicketPriority, TicketStatus
from ticket_engine.services.cache_store import CacheStore
from ticket_engine.services.dispatcher import MutationDispatcher
from ticket_engine.services.mutation_client import TicketServiceClient
from ticket_engine.services.reconciler import Reconciler

BASE_TIME = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Timestamp relative to BASE_TIME"""
    return BASE_TIME + timedelta(seconds=seconds)


@pytest.fixture
def make_ticket() -> Callable[..., Ticket]:
    """Factory for cached tickets; updated is seconds after BASE_TIME"""

    def factory(ticket_id: str = "T-1", updated: float = 0, **fields) -> Ticket:
        values: Dict[str, Any] = {
            "id": ticket_id,
            "subject": f"Customer issue {ticket_id}",
            "status": TicketStatus.OPEN,
            "priority": TicketPriority.MEDIUM,
            "created_at": BASE_TIME,
            "updated_at": at(updated),
        }
        values.update(fields)
        return Ticket(**values)

    return factory


@pytest.fixture
def ticket_payload() -> Callable[..., Dict[str, Any]]:
    """Factory for wire-format (camelCase) ticket dicts"""

    def factory(ticket_id: str = "T-1", updated: float = 0, **fields) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": ticket_id,
            "subject": f"Customer issue {ticket_id}",
            "status": "open",
            "priority": "medium",
            "tags": [],
            "createdAt": BASE_TIME.isoformat(),
            "updatedAt": at(updated).isoformat(),
        }
        payload.update(fields)
        return payload

    return factory


@pytest.fixture
def store() -> CacheStore:
    """Initialised cache store"""
    cache = CacheStore()
    cache.init()
    yield cache
    cache.dispose()


@pytest.fixture
def all_tickets_key() -> str:
    return TicketFilter().key()


@pytest.fixture
def reconciler(store) -> Reconciler:
    """Reconciler without a refresh callback"""
    return Reconciler(store, debounce_seconds=0.01)


@pytest.fixture
def mock_client() -> MagicMock:
    """Ticket service client with every remote call mocked"""
    client = MagicMock(spec=TicketServiceClient)
    client.get_ticket = AsyncMock()
    client.list_tickets = AsyncMock(return_value=[])
    client.update_ticket = AsyncMock()
    client.assign_ticket = AsyncMock()
    client.bulk_update = AsyncMock()
    client.merge_tickets = AsyncMock()
    return client


@pytest.fixture
def dispatcher(reconciler, mock_client) -> MutationDispatcher:
    return MutationDispatcher(reconciler, mock_client)


@pytest.fixture
def seeded(store, reconciler, all_tickets_key, make_ticket):
    """Three open tickets cached under the unfiltered list"""
    reconciler.register_filter(TicketFilter())
    tickets = [make_ticket(f"T-{i}") for i in range(1, 4)]
    store.set_list(all_tickets_key, tickets)
    return tickets
