"""
Unit tests for the ticket cache store

Tests:
- Lifecycle
- List and detail reads
- Shared detail records across filter keys
- Change notifications
- Refresh timers
"""
import asyncio

import pytest

from ticket_engine.models.schemas import TicketStatus
from ticket_engine.services.cache_store import CacheStore, TimerState


@pytest.fixture
def changes(store):
    """Changes received by a subscriber"""
    received = []
    store.subscribe(received.append)
    return received


class TestLifecycle:

    def test_init_and_dispose(self):
        cache = CacheStore()
        assert not cache.active
        cache.init()
        assert cache.active
        cache.dispose()
        assert not cache.active

    def test_dispose_drops_state(self, store, make_ticket):
        store.set_list("k", [make_ticket()])
        store.dispose()
        assert store.get("k") is None
        assert store.get_detail("T-1") is None


class TestReads:

    def test_unloaded_key(self, store):
        assert store.get("tickets:list:{}") is None
        assert store.get_tickets("tickets:list:{}") == []

    def test_list_order_kept(self, store, make_ticket):
        store.set_list("k", [make_ticket("T-2"), make_ticket("T-1")])
        assert store.get("k") == ["T-2", "T-1"]
        assert [t.id for t in store.get_tickets("k")] == ["T-2", "T-1"]

    def test_get_returns_copy(self, store, make_ticket):
        store.set_list("k", [make_ticket()])
        store.get("k").append("T-9")
        assert store.get("k") == ["T-1"]

    def test_keys_containing(self, store, make_ticket):
        store.set_list("a", [make_ticket("T-1")])
        store.set_list("b", [make_ticket("T-1"), make_ticket("T-2")])
        assert sorted(store.keys_containing("T-1")) == ["a", "b"]
        assert store.keys_containing("T-2") == ["b"]

    def test_dirty_since_advances(self, store, make_ticket):
        store.set_list("k", [make_ticket()])
        first = store.dirty_since("k")
        store.upsert_detail(make_ticket(updated=5))
        assert store.dirty_since("k") >= first


class TestWrites:

    def test_detail_shared_between_lists(self, store, make_ticket, changes):
        """Test one write is visible under every filter key"""
        store.set_list("open", [make_ticket()])
        store.set_list("mine", [make_ticket()])
        changes.clear()

        store.upsert_detail(make_ticket(updated=10, status=TicketStatus.WAITING))

        assert store.get_tickets("open")[0].status == TicketStatus.WAITING
        assert store.get_tickets("mine")[0].status == TicketStatus.WAITING
        assert len(changes) == 1
        assert changes[0].filter_keys == frozenset({"open", "mine"})
        assert changes[0].ticket_ids == frozenset({"T-1"})

    def test_silent_upsert(self, store, make_ticket, changes):
        store.set_list("k", [make_ticket()])
        changes.clear()
        store.upsert_detail(make_ticket(updated=1), notify=False)
        assert changes == []
        assert store.get_detail("T-1").updated_at == make_ticket(updated=1).updated_at

    def test_prepend(self, store, make_ticket):
        store.set_list("k", [make_ticket("T-1")])
        assert store.prepend_to_list("k", make_ticket("T-2"))
        assert store.get("k") == ["T-2", "T-1"]

    def test_prepend_duplicate_is_noop(self, store, make_ticket, changes):
        """Test an already listed id is not inserted twice"""
        store.set_list("k", [make_ticket("T-1")])
        changes.clear()
        assert not store.prepend_to_list("k", make_ticket("T-1", updated=3))
        assert store.get("k") == ["T-1"]
        assert changes == []

    def test_prepend_creates_list(self, store, make_ticket):
        assert store.prepend_to_list("new", make_ticket())
        assert store.get("new") == ["T-1"]

    def test_remove_ticket(self, store, make_ticket, changes):
        store.set_list("a", [make_ticket("T-1"), make_ticket("T-2")])
        store.set_list("b", [make_ticket("T-1")])
        changes.clear()
        store.remove_ticket("T-1")
        assert store.get("a") == ["T-2"]
        assert store.get("b") == []
        assert store.get_detail("T-1") is None
        assert changes[0].filter_keys == frozenset({"a", "b"})

    def test_remove_unknown_ticket_is_silent(self, store, changes):
        store.remove_ticket("T-404")
        assert changes == []

    def test_drop_list(self, store, make_ticket):
        store.set_list("k", [make_ticket()])
        store.drop_list("k")
        assert store.get("k") is None
        assert store.get_detail("T-1") is not None


class TestSubscriptions:

    def test_unsubscribe(self, store, make_ticket):
        received = []
        unsubscribe = store.subscribe(received.append)
        unsubscribe()
        store.set_list("k", [make_ticket()])
        assert received == []

    def test_failing_listener_does_not_break_write(self, store, make_ticket):
        """Test a listener error is logged and other listeners still run"""
        received = []

        def broken(change):
            raise RuntimeError("render failed")

        store.subscribe(broken)
        store.subscribe(received.append)
        store.set_list("k", [make_ticket()])
        assert store.get("k") == ["T-1"]
        assert len(received) == 1


class TestRefreshTimers:

    @pytest.mark.asyncio
    async def test_rearm_moves_deadline(self, store):
        """Test re-arming restarts the window and fires once"""
        fired = []

        def callback():
            store.fire_timer("k")
            fired.append(1)

        timer = store.arm_timer("k", 0.02, callback)
        first_deadline = timer.deadline
        await asyncio.sleep(0.005)
        store.arm_timer("k", 0.02, callback)

        assert timer.state == TimerState.ARMED
        assert timer.arm_count == 2
        assert timer.deadline > first_deadline

        await asyncio.sleep(0.06)
        assert fired == [1]
        assert timer.state == TimerState.FIRED
        assert store.timer("k") is None

    @pytest.mark.asyncio
    async def test_clear_timer_cancels(self, store):
        fired = []
        timer = store.arm_timer("k", 0.01, lambda: fired.append(1))
        assert store.clear_timer("k")
        await asyncio.sleep(0.03)
        assert fired == []
        assert timer.state == TimerState.CANCELLED
        assert not store.clear_timer("k")

    @pytest.mark.asyncio
    async def test_dispose_cancels_timers(self, store):
        fired = []
        store.arm_timer("a", 0.01, lambda: fired.append("a"))
        store.arm_timer("b", 0.01, lambda: fired.append("b"))
        assert sorted(store.pending_timer_keys()) == ["a", "b"]
        store.dispose()
        await asyncio.sleep(0.03)
        assert fired == []
        assert store.pending_timer_keys() == []
