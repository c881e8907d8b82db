"""
Unit tests for bulk operations

Tests:
- Validation before any network call
- Independent per-item success and failure
- Batched endpoint with per-item confirm and rollback
"""
from datetime import timedelta

import pytest

from ticket_engine.models.errors import PartialBatchFailure, TransientNetworkError, ValidationError
from ticket_engine.models.schemas import PerItemResult, TicketDelta, TicketPriority, TicketStatus
from ticket_engine.services.bulk import BulkOrchestrator


@pytest.fixture
def bulk(dispatcher):
    return BulkOrchestrator(dispatcher)


def failing_for(*failing_ids):
    """update_ticket side effect failing the given ids"""

    async def update(ticket_id, delta, current=None):
        if ticket_id in failing_ids:
            raise TransientNetworkError("Gateway timeout", ticket_id=ticket_id)
        values = delta.resolve(current)
        values["updated_at"] = current.updated_at + timedelta(seconds=3)
        return current.with_values(values)

    return update


class TestValidation:
    """Test input rejected before dispatch"""

    @pytest.mark.asyncio
    async def test_empty_tag_addition_makes_no_calls(self, bulk, mock_client, store, seeded):
        """Test tag addition with no tags is rejected up front"""
        before = [store.get_detail(t.id) for t in seeded]

        with pytest.raises(ValidationError):
            await bulk.add_tags(["T-1", "T-2"], [])

        mock_client.update_ticket.assert_not_awaited()
        assert [store.get_detail(t.id) for t in seeded] == before

    @pytest.mark.asyncio
    async def test_empty_selection(self, bulk, mock_client):
        with pytest.raises(ValidationError):
            await bulk.set_status([], TicketStatus.DONE)
        mock_client.update_ticket.assert_not_awaited()

    def test_merge_selection_needs_two(self, bulk):
        with pytest.raises(ValidationError):
            bulk.validate_merge_selection(["T-1"])
        assert bulk.validate_merge_selection(["T-1", "T-2"]) == ["T-1", "T-2"]


class TestFanOut:
    """Test one mutation per ticket"""

    @pytest.mark.asyncio
    async def test_all_succeed(self, bulk, mock_client, store, seeded):
        mock_client.update_ticket.side_effect = failing_for()

        result = await bulk.set_priority(["T-1", "T-2", "T-3"], TicketPriority.CRITICAL)

        assert result.ok
        assert result.succeeded == ["T-1", "T-2", "T-3"]
        assert result.partial_failure is None
        assert mock_client.update_ticket.await_count == 3
        assert all(store.get_detail(t.id).priority == TicketPriority.CRITICAL for t in seeded)

    @pytest.mark.asyncio
    async def test_partial_failure_is_independent(self, bulk, mock_client, store, seeded):
        """Test a failed item is rolled back while the others keep their change"""
        mock_client.update_ticket.side_effect = failing_for("T-2")

        result = await bulk.set_status(["T-1", "T-2", "T-3"], TicketStatus.DONE)

        assert result.total == 3
        assert result.succeeded == ["T-1", "T-3"]
        assert list(result.failed) == ["T-2"]
        assert "Gateway timeout" in result.failed["T-2"]
        assert store.get_detail("T-1").status == TicketStatus.DONE
        assert store.get_detail("T-2").status == TicketStatus.OPEN
        assert store.get_detail("T-3").status == TicketStatus.DONE

        failure = result.partial_failure
        assert isinstance(failure, PartialBatchFailure)
        assert set(failure.failures) == {"T-2"}
        assert failure.total == 3

    @pytest.mark.asyncio
    async def test_duplicates_sent_once(self, bulk, mock_client, seeded):
        mock_client.update_ticket.side_effect = failing_for()

        result = await bulk.escalate(["T-1", "T-1", "T-2"])

        assert result.total == 2
        assert mock_client.update_ticket.await_count == 2

    @pytest.mark.asyncio
    async def test_escalate(self, bulk, mock_client, store, seeded):
        mock_client.update_ticket.side_effect = failing_for()

        await bulk.escalate(["T-1"])

        assert store.get_detail("T-1").status == TicketStatus.ESCALATED

    @pytest.mark.asyncio
    async def test_add_tags_keeps_existing(self, bulk, mock_client, store, seeded):
        store.upsert_detail(seeded[0].with_values({"tags": ["vip"]}))
        mock_client.update_ticket.side_effect = failing_for()

        result = await bulk.add_tags(["T-1", "T-2"], ["follow-up"])

        assert result.ok
        assert store.get_detail("T-1").tags == ["vip", "follow-up"]
        assert store.get_detail("T-2").tags == ["follow-up"]

    @pytest.mark.asyncio
    async def test_assign(self, bulk, mock_client, store, seeded):
        async def assign(ticket_id, agent_id):
            current = store.get_detail(ticket_id)
            return current.with_values({"assigned_agent": agent_id, "updated_at": current.updated_at + timedelta(seconds=1)})

        mock_client.assign_ticket.side_effect = assign

        result = await bulk.assign(["T-1", "T-2"], "agent-4")

        assert result.ok
        assert store.get_detail("T-2").assigned_agent == "agent-4"


class TestBatched:
    """Test the single-request bulk endpoint"""

    @pytest.mark.asyncio
    async def test_per_item_results(self, bulk, mock_client, store, seeded):
        confirmed = seeded[0].with_values({
            "status": TicketStatus.DONE,
            "updated_at": seeded[0].updated_at + timedelta(seconds=2),
        })
        mock_client.bulk_update.return_value = [
            PerItemResult(ticket_id="T-1", success=True, ticket=confirmed),
            PerItemResult(ticket_id="T-2", success=False, error="Ticket locked"),
        ]

        result = await bulk.dispatch_batched(["T-1", "T-2"], TicketDelta(status=TicketStatus.DONE))

        mock_client.bulk_update.assert_awaited_once()
        assert result.succeeded == ["T-1"]
        assert result.failed == {"T-2": "Ticket locked"}
        assert store.get_detail("T-1") == confirmed
        assert store.get_detail("T-2").status == TicketStatus.OPEN
        assert bulk.dispatcher.reconciler.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_failure_rolls_back_all(self, bulk, mock_client, store, seeded):
        before = [store.get_detail(t.id) for t in seeded]
        mock_client.bulk_update.side_effect = TransientNetworkError("connection reset")

        result = await bulk.dispatch_batched(
            ["T-1", "T-2", "T-3"], TicketDelta(priority=TicketPriority.LOW)
        )

        assert result.succeeded == []
        assert set(result.failed) == {"T-1", "T-2", "T-3"}
        assert [store.get_detail(t.id) for t in seeded] == before

    @pytest.mark.asyncio
    async def test_tag_addition_keeps_existing_tags(self, bulk, mock_client, store, seeded):
        """Test a batched tag addition is sent per ticket against current tags"""
        store.upsert_detail(seeded[0].with_values({"tags": ["vip"]}))
        mock_client.update_ticket.side_effect = failing_for()

        result = await bulk.dispatch_batched(["T-1", "T-2"], TicketDelta(add_tags=["follow-up"]))

        mock_client.bulk_update.assert_not_awaited()
        assert mock_client.update_ticket.await_count == 2
        sent_base = {call.args[0]: call.args[2] for call in mock_client.update_ticket.await_args_list}
        assert sent_base["T-1"].tags == ["vip"]
        assert result.succeeded == ["T-1", "T-2"]
        assert store.get_detail("T-1").tags == ["vip", "follow-up"]
        assert store.get_detail("T-2").tags == ["follow-up"]
