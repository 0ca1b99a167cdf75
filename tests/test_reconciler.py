"""Tests for the Reconciler — the only path that moves an Order's canonical status."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from app.core.exceptions import (
    ConflictTerminalStateMismatch,
    OrderNotFound,
    ReconcileContention,
)
from app.models.order import OrderStatus, Provider
from app.models.status_event import EventReason, EventSource
from app.settlement.config import MAX_CAS_RETRIES


# ---------------------------------------------------------------------------
# Forward progress
# ---------------------------------------------------------------------------


class TestApply:
    @pytest.mark.asyncio
    async def test_forward_transition_applies(self, reconciler, order_store, stored_order):
        result = await reconciler.apply_observation(stored_order.id, EventSource.POLL, "pending")

        assert result.accepted is True
        assert result.applied is True
        assert result.reason == EventReason.APPLIED
        assert result.new_canonical_status == OrderStatus.PENDING
        assert stored_order.canonical_status == OrderStatus.PENDING
        assert stored_order.provider_raw_status == "pending"
        assert stored_order.completed_at is None

        [event] = order_store.events_for(stored_order.id)
        assert event.applied is True
        assert event.canonical_status == OrderStatus.PENDING
        assert event.source == EventSource.POLL

    @pytest.mark.asyncio
    async def test_settled_stamps_completed_at(self, reconciler, stored_order):
        observed_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        result = await reconciler.apply_observation(
            stored_order.id, EventSource.WEBHOOK, "payment_order.settled", observed_at,
            receipt_id="0xreceipt",
        )

        assert result.applied is True
        assert result.is_settled is True
        assert stored_order.canonical_status == OrderStatus.SETTLED
        assert stored_order.completed_at == observed_at
        assert stored_order.settlement_receipt_id == "0xreceipt"

    @pytest.mark.asyncio
    async def test_validated_is_settled_without_completed_at(self, reconciler, stored_order):
        result = await reconciler.apply_observation(
            stored_order.id, EventSource.POLL, "validated", receipt_id="0xabc",
        )

        assert result.is_settled is True
        assert stored_order.canonical_status == OrderStatus.VALIDATED
        assert stored_order.completed_at is None
        assert stored_order.settlement_receipt_id == "0xabc"

    @pytest.mark.asyncio
    async def test_receipt_ignored_before_success(self, reconciler, stored_order):
        await reconciler.apply_observation(
            stored_order.id, EventSource.POLL, "pending", receipt_id="0xearly",
        )
        assert stored_order.settlement_receipt_id is None

    @pytest.mark.asyncio
    async def test_initiated_can_fail_directly(self, reconciler, stored_order):
        result = await reconciler.apply_observation(stored_order.id, EventSource.POLL, "expired")

        assert result.applied is True
        assert stored_order.canonical_status == OrderStatus.EXPIRED
        assert stored_order.completed_at is None

    @pytest.mark.asyncio
    async def test_status_matching_is_case_insensitive(self, reconciler, stored_order):
        result = await reconciler.apply_observation(stored_order.id, EventSource.POLL, "  PENDING ")
        assert result.new_canonical_status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_order_raises(self, reconciler):
        with pytest.raises(OrderNotFound):
            await reconciler.apply_observation(uuid.uuid4(), EventSource.POLL, "pending")


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestReject:
    @pytest.mark.asyncio
    async def test_same_state_is_accepted_no_op(self, reconciler, order_store, stored_order):
        settled_at = datetime(2026, 3, 1, tzinfo=timezone.utc)
        await reconciler.apply_observation(stored_order.id, EventSource.POLL, "settled", settled_at)

        again = await reconciler.apply_observation(
            stored_order.id, EventSource.WEBHOOK, "payment_order.settled",
            settled_at + timedelta(minutes=5),
        )

        assert again.accepted is True
        assert again.applied is False
        assert again.reason == EventReason.DUPLICATE
        assert stored_order.completed_at == settled_at
        assert len(order_store.events_for(stored_order.id)) == 2

    @pytest.mark.asyncio
    async def test_earlier_state_is_stale(self, reconciler, stored_order):
        await reconciler.apply_observation(stored_order.id, EventSource.POLL, "validated")

        result = await reconciler.apply_observation(stored_order.id, EventSource.POLL, "pending")

        assert result.accepted is False
        assert result.reason == EventReason.STALE
        assert stored_order.canonical_status == OrderStatus.VALIDATED

    @pytest.mark.asyncio
    async def test_terminal_conflict_is_recorded_not_applied(self, reconciler, order_store, stored_order):
        await reconciler.apply_observation(stored_order.id, EventSource.POLL, "settled")

        result = await reconciler.apply_observation(stored_order.id, EventSource.WEBHOOK, "refunded")

        assert result.accepted is False
        assert result.reason == EventReason.TERMINAL_CONFLICT
        assert isinstance(result.conflict, ConflictTerminalStateMismatch)
        assert result.conflict.details["committed"] == "settled"
        assert result.conflict.details["reported"] == "refunded"
        assert stored_order.canonical_status == OrderStatus.SETTLED

        last = order_store.events_for(stored_order.id)[-1]
        assert last.applied is False
        assert last.reason == EventReason.TERMINAL_CONFLICT
        assert "refunded" in last.error

    @pytest.mark.asyncio
    async def test_unknown_status_is_recorded(self, reconciler, order_store, stored_order):
        result = await reconciler.apply_observation(stored_order.id, EventSource.POLL, "on_hold")

        assert result.accepted is False
        assert result.reason == EventReason.UNKNOWN_STATUS
        assert result.observed_status == OrderStatus.UNKNOWN
        assert stored_order.canonical_status == OrderStatus.INITIATED

        [event] = order_store.events_for(stored_order.id)
        assert event.raw_status == "on_hold"
        assert event.canonical_status == OrderStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_every_observation_leaves_one_event(self, reconciler, order_store, stored_order):
        for raw in ["pending", "pending", "initiated", "??", "settled", "failed"]:
            await reconciler.apply_observation(stored_order.id, EventSource.POLL, raw)

        events = order_store.events_for(stored_order.id)
        assert len(events) == 6
        assert [e.applied for e in events] == [True, False, False, False, True, False]


# ---------------------------------------------------------------------------
# Dedupe keys
# ---------------------------------------------------------------------------


class TestDedupe:
    @pytest.mark.asyncio
    async def test_applied_key_short_circuits(self, reconciler, order_store, stored_order):
        first = await reconciler.apply_observation(
            stored_order.id, EventSource.WEBHOOK, "pending", dedupe_key="paycrest:x:pending",
        )
        await reconciler.apply_observation(stored_order.id, EventSource.POLL, "validated")

        # Redelivery of the earlier event is a duplicate, not a stale observation
        second = await reconciler.apply_observation(
            stored_order.id, EventSource.WEBHOOK, "pending", dedupe_key="paycrest:x:pending",
        )

        assert first.applied is True
        assert second.accepted is True
        assert second.applied is False
        assert second.reason == EventReason.DUPLICATE
        assert stored_order.canonical_status == OrderStatus.VALIDATED

    @pytest.mark.asyncio
    async def test_rejected_key_does_not_block(self, reconciler, stored_order):
        await reconciler.apply_observation(
            stored_order.id, EventSource.WEBHOOK, "mystery", dedupe_key="k1",
        )
        assert not await reconciler.store.has_applied_event("k1")


# ---------------------------------------------------------------------------
# Compare-and-set under contention
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_racing_observations_serialize(self, reconciler, order_store, stored_order):
        await asyncio.gather(
            reconciler.apply_observation(stored_order.id, EventSource.POLL, "pending"),
            reconciler.apply_observation(stored_order.id, EventSource.WEBHOOK, "validated"),
        )

        assert stored_order.canonical_status == OrderStatus.VALIDATED
        applied = [e for e in order_store.events_for(stored_order.id) if e.applied]
        assert [e.canonical_status for e in applied].count(OrderStatus.VALIDATED) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_apply_once(self, reconciler, order_store, stored_order):
        results = await asyncio.gather(*[
            reconciler.apply_observation(stored_order.id, EventSource.WEBHOOK, "settled")
            for _ in range(10)
        ])

        assert sum(r.applied for r in results) == 1
        assert all(r.accepted for r in results)
        assert order_store.cas_failures >= 1
        assert stored_order.canonical_status == OrderStatus.SETTLED

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, reconciler, order_store, stored_order):
        order_store.commit_transition = AsyncMock(return_value=None)

        with pytest.raises(ReconcileContention):
            await reconciler.apply_observation(stored_order.id, EventSource.POLL, "pending")

        assert order_store.commit_transition.await_count == MAX_CAS_RETRIES
        assert stored_order.canonical_status == OrderStatus.INITIATED


# ---------------------------------------------------------------------------
# Failures that never reach a decision
# ---------------------------------------------------------------------------


class TestRecordFailure:
    @pytest.mark.asyncio
    async def test_records_unapplied_event(self, reconciler, order_store, stored_order):
        event = await reconciler.record_failure(
            provider=Provider.PAYCREST, source=EventSource.POLL,
            reason=EventReason.UPSTREAM_ERROR, error="paycrest returned 503",
            order=stored_order, attempt_number=2,
        )

        assert event in order_store.events
        assert event.applied is False
        assert event.order_id == stored_order.id
        assert event.provider_order_id == stored_order.provider_order_id
        assert event.canonical_status is None
        assert event.attempt_number == 2

    @pytest.mark.asyncio
    async def test_without_order(self, reconciler):
        event = await reconciler.record_failure(
            provider=Provider.PRETIUM, source=EventSource.WEBHOOK,
            reason=EventReason.ORDER_NOT_FOUND, error="no order", provider_order_id="TX-1",
        )
        assert event.order_id is None
        assert event.provider_order_id == "TX-1"
