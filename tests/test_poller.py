"""Tests for the Polling Engine — backoff schedule, termination, join and cancel."""

import asyncio
import uuid

import pytest
from redis.exceptions import RedisError

from app.core.exceptions import NotFound, OrderNotFound, PollTimeout, UpstreamUnavailable
from app.models.order import LocalCurrency, OrderStatus, Provider
from app.models.status_event import EventReason, EventSource
from app.settlement.poller import PollingEngine, PollOptions, PollOutcome
from app.settlement.reconciler import Reconciler


def _opts(**overrides):
    defaults = dict(
        base_delay=3.0, growth_factor=1.4, cap_delay=30.0,
        max_attempts=20, timeout=600.0, attempt_timeout=5.0, not_found_threshold=3,
    )
    defaults.update(overrides)
    return PollOptions(**defaults)


async def _spin(predicate, rounds=200):
    """Yield to the loop until *predicate* holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def gate():
    return asyncio.Event()


@pytest.fixture
def gated_engine(order_store, registry, clock, gate):
    """Engine whose backoff sleeps block until ``gate`` is set."""
    async def sleep(seconds):
        clock.sleeps.append(seconds)
        await gate.wait()

    return PollingEngine(
        order_store, Reconciler(order_store, registry), registry, clock=clock, sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Backoff schedule
# ---------------------------------------------------------------------------


class TestPollOptions:
    def test_first_attempt_is_immediate(self):
        assert _opts().delay_for(0) == 0

    def test_exponential_growth(self):
        opts = _opts()
        assert opts.delay_for(1) == pytest.approx(4.2)
        assert opts.delay_for(2) == pytest.approx(5.88)

    def test_capped(self):
        assert _opts().delay_for(10) == 30.0

    @pytest.mark.parametrize("field, value", [
        ("growth_factor", 0.5),
        ("max_attempts", 0),
        ("timeout", 0),
        ("base_delay", -1),
        ("not_found_threshold", 0),
    ])
    def test_rejects_invalid(self, field, value):
        with pytest.raises(ValueError):
            _opts(**{field: value})

    def test_defaults_from_settings(self):
        opts = PollOptions()
        assert opts.base_delay == 3.0
        assert opts.growth_factor == 1.4
        assert opts.cap_delay == 30.0
        assert opts.max_attempts == 20


# ---------------------------------------------------------------------------
# Pull polling
# ---------------------------------------------------------------------------


class TestPollUpstream:
    @pytest.mark.asyncio
    async def test_initiated_pending_settled(
        self, make_engine, make_adapter, registry, order_store, stored_order, clock,
    ):
        adapter = make_adapter(script=["initiated", "pending", "settled"])
        registry.register(adapter)
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts())

        assert result.outcome == PollOutcome.SETTLED
        assert result.settled and result.completed
        assert result.attempts == 3
        assert adapter.calls == 3
        assert result.order.canonical_status == OrderStatus.SETTLED
        assert result.order.completed_at is not None
        assert clock.sleeps == [pytest.approx(4.2), pytest.approx(5.88)]

        events = order_store.events_for(stored_order.id)
        assert [e.reason for e in events] == [
            EventReason.DUPLICATE, EventReason.APPLIED, EventReason.APPLIED,
        ]
        assert [e.attempt_number for e in events] == [1, 2, 3]
        assert stored_order.poll_attempt_count == 3
        assert stored_order.last_polled_at is not None

    @pytest.mark.asyncio
    async def test_never_terminal_times_out_on_attempts(
        self, make_engine, make_adapter, registry, stored_order,
    ):
        adapter = make_adapter(script=["pending"])
        registry.register(adapter)
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts(max_attempts=3, base_delay=0.1, cap_delay=1.0))

        assert result.outcome == PollOutcome.TIMEOUT
        assert result.reason == "max_attempts"
        assert result.attempts == 3
        assert adapter.calls == 3
        assert isinstance(result.error, PollTimeout)
        assert not result.completed

    @pytest.mark.asyncio
    async def test_deadline_stops_before_next_sleep(
        self, make_engine, make_adapter, registry, stored_order, clock,
    ):
        adapter = make_adapter(script=["pending"])
        registry.register(adapter)
        engine = make_engine(registry)

        # delays 0, 6, 12: the third attempt would start past the 10s deadline
        result = await engine.poll(stored_order.id, _opts(base_delay=3.0, growth_factor=2.0, timeout=10.0))

        assert result.outcome == PollOutcome.TIMEOUT
        assert result.reason == "deadline"
        assert result.attempts == 2
        assert clock.now < 10.0

    @pytest.mark.asyncio
    async def test_delays_respect_cap(self, make_engine, make_adapter, registry, stored_order, clock):
        registry.register(make_adapter(script=["pending"]))
        engine = make_engine(registry)

        await engine.poll(stored_order.id, _opts(base_delay=1.0, growth_factor=10.0, cap_delay=5.0, max_attempts=4))

        assert clock.sleeps == [5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_upstream_errors_use_attempts_and_continue(
        self, make_engine, make_adapter, registry, order_store, stored_order,
    ):
        down = UpstreamUnavailable("paycrest returned 503")
        registry.register(make_adapter(script=[down, down, "settled"]))
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts())

        assert result.outcome == PollOutcome.SETTLED
        assert result.attempts == 3
        reasons = [e.reason for e in order_store.events_for(stored_order.id)]
        assert reasons == [EventReason.UPSTREAM_ERROR, EventReason.UPSTREAM_ERROR, EventReason.APPLIED]
        assert stored_order.poll_attempt_count == 3

    @pytest.mark.asyncio
    async def test_upstream_errors_alone_time_out(self, make_engine, make_adapter, registry, stored_order):
        registry.register(make_adapter(script=[UpstreamUnavailable("down")]))
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts(max_attempts=4))

        assert result.outcome == PollOutcome.TIMEOUT
        assert result.attempts == 4

    @pytest.mark.asyncio
    async def test_attempt_timeout_counts_as_upstream_error(
        self, make_engine, make_adapter, registry, order_store, stored_order,
    ):
        async def hang():
            await asyncio.Event().wait()

        registry.register(make_adapter(script=[hang, "settled"]))
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts(attempt_timeout=0.01))

        assert result.outcome == PollOutcome.SETTLED
        first = order_store.events_for(stored_order.id)[0]
        assert first.reason == EventReason.UPSTREAM_ERROR
        assert first.error == "status lookup timed out"

    @pytest.mark.asyncio
    async def test_repeated_not_found_fails(self, make_engine, make_adapter, registry, order_store, stored_order):
        registry.register(make_adapter(script=[NotFound("paycrest resource not found")]))
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts(not_found_threshold=3))

        assert result.outcome == PollOutcome.FAILED
        assert result.reason == "not_found"
        assert result.attempts == 3
        assert isinstance(result.error, NotFound)
        # The order itself is left for the operator; only the loop gave up
        assert stored_order.canonical_status == OrderStatus.INITIATED
        reasons = {e.reason for e in order_store.events_for(stored_order.id)}
        assert reasons == {EventReason.NOT_FOUND}

    @pytest.mark.asyncio
    async def test_not_found_streak_resets(self, make_engine, make_adapter, registry, stored_order):
        gone = NotFound("missing")
        registry.register(make_adapter(script=[gone, gone, "pending", gone, gone, "settled"]))
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts(not_found_threshold=3))

        assert result.outcome == PollOutcome.SETTLED
        assert result.attempts == 6

    @pytest.mark.asyncio
    async def test_terminal_failure_stops(self, make_engine, make_adapter, registry, stored_order):
        registry.register(make_adapter(script=["pending", "expired"]))
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts())

        assert result.outcome == PollOutcome.FAILED
        assert result.reason == "expired"
        assert result.completed and not result.settled

    @pytest.mark.asyncio
    async def test_validated_counts_as_settled(self, make_engine, make_adapter, registry, stored_order):
        registry.register(make_adapter(script=["validated"]))
        engine = make_engine(registry)

        result = await engine.poll(stored_order.id, _opts())

        assert result.outcome == PollOutcome.SETTLED
        assert result.reason == "validated"

    @pytest.mark.asyncio
    async def test_already_terminal_skips_upstream(
        self, make_engine, make_adapter, registry, order_store, make_order,
    ):
        adapter = make_adapter()
        registry.register(adapter)
        order = await order_store.create_order(make_order(canonical_status=OrderStatus.REFUNDED))
        engine = make_engine(registry)

        result = await engine.poll(order.id, _opts())

        assert result.outcome == PollOutcome.FAILED
        assert result.attempts == 0
        assert adapter.calls == 0

    @pytest.mark.asyncio
    async def test_missing_order_raises(self, make_engine, registry):
        engine = make_engine(registry)
        with pytest.raises(OrderNotFound):
            await engine.poll(uuid.uuid4(), _opts())


# ---------------------------------------------------------------------------
# Push vendors and the cross-instance lock
# ---------------------------------------------------------------------------


class TestWatch:
    @pytest.mark.asyncio
    async def test_push_vendor_watches_store(
        self, order_store, registry, reconciler, clock, make_order, pretium_adapter,
    ):
        order = await order_store.create_order(make_order(
            provider=Provider.PRETIUM, provider_order_id="TX-1", local_currency=LocalCurrency.KES,
        ))

        async def sleep(seconds):
            await clock.sleep(seconds)
            if len(clock.sleeps) == 2:
                await reconciler.apply_observation(order.id, EventSource.WEBHOOK, "COMPLETE")

        engine = PollingEngine(order_store, reconciler, registry, clock=clock, sleep=sleep)
        result = await engine.poll(order.id, _opts())

        assert result.outcome == PollOutcome.SETTLED
        assert result.attempts == 2
        # Only the webhook left an event; the watcher never calls upstream
        assert [e.source for e in order_store.events_for(order.id)] == [EventSource.WEBHOOK]

    @pytest.mark.asyncio
    async def test_push_vendor_without_webhook_times_out(self, make_engine, registry, order_store, make_order):
        order = await order_store.create_order(make_order(provider=Provider.PRETIUM))
        engine = make_engine(registry)

        result = await engine.poll(order.id, _opts(max_attempts=3))

        assert result.outcome == PollOutcome.TIMEOUT
        assert order_store.events_for(order.id) == []

    @pytest.mark.asyncio
    async def test_lock_holder_elsewhere_means_watch(
        self, make_engine, make_adapter, registry, stored_order, mock_redis,
    ):
        adapter = make_adapter(script=["settled"])
        registry.register(adapter)
        mock_redis.poll_lock.acquire.return_value = False
        engine = make_engine(registry, redis=mock_redis)

        result = await engine.poll(stored_order.id, _opts(max_attempts=2))

        assert result.outcome == PollOutcome.TIMEOUT
        assert adapter.calls == 0
        mock_redis.poll_lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lock_released_after_polling(
        self, make_engine, make_adapter, registry, stored_order, mock_redis,
    ):
        registry.register(make_adapter(script=["settled"]))
        engine = make_engine(registry, redis=mock_redis)

        result = await engine.poll(stored_order.id, _opts())

        assert result.settled
        mock_redis.poll_lock.acquire.assert_awaited_once()
        mock_redis.poll_lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redis_outage_polls_without_lock(
        self, make_engine, make_adapter, registry, stored_order, mock_redis,
    ):
        adapter = make_adapter(script=["settled"])
        registry.register(adapter)
        mock_redis.poll_lock.acquire.side_effect = RedisError("connection refused")
        engine = make_engine(registry, redis=mock_redis)

        result = await engine.poll(stored_order.id, _opts())

        assert result.settled
        assert adapter.calls == 1


# ---------------------------------------------------------------------------
# One loop per order: join, cancel, shutdown
# ---------------------------------------------------------------------------


class TestJobLifecycle:
    @pytest.mark.asyncio
    async def test_second_caller_joins(self, gated_engine, gate, make_adapter, registry, stored_order):
        adapter = make_adapter(script=["pending", "settled"])
        registry.register(adapter)

        first = asyncio.create_task(gated_engine.poll(stored_order.id, _opts()))
        await _spin(lambda: adapter.calls == 1)
        second = asyncio.create_task(gated_engine.poll(stored_order.id, _opts()))
        await _spin(lambda: gated_engine.get_job(stored_order.id).waiters == 2)

        gate.set()
        r1, r2 = await asyncio.gather(first, second)

        assert r1 is r2
        assert r1.outcome == PollOutcome.SETTLED
        assert adapter.calls == 2
        assert gated_engine.get_job(stored_order.id) is None

    @pytest.mark.asyncio
    async def test_cancel_stops_further_attempts(
        self, gated_engine, make_adapter, registry, order_store, stored_order,
    ):
        adapter = make_adapter(script=["pending"])
        registry.register(adapter)

        task = asyncio.create_task(gated_engine.poll(stored_order.id, _opts()))
        await _spin(lambda: adapter.calls == 1 and gated_engine.get_job(stored_order.id).next_run_at)

        assert gated_engine.cancel(stored_order.id) is True
        result = await task

        assert result.outcome == PollOutcome.CANCELLED
        assert adapter.calls == 1
        assert len(order_store.events_for(stored_order.id)) == 1
        assert gated_engine.cancel(stored_order.id) is False

    @pytest.mark.asyncio
    async def test_last_caller_abandoning_cancels_job(self, gated_engine, make_adapter, registry, stored_order):
        registry.register(make_adapter(script=["pending"]))

        caller = asyncio.create_task(gated_engine.poll(stored_order.id, _opts()))
        await _spin(lambda: gated_engine.get_job(stored_order.id) is not None)
        job = gated_engine.get_job(stored_order.id)
        await _spin(lambda: job.next_run_at is not None)

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        result = await job.task
        assert job.cancelled is True
        assert result.outcome == PollOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_one_caller_leaving_keeps_job(self, gated_engine, gate, make_adapter, registry, stored_order):
        registry.register(make_adapter(script=["pending", "settled"]))

        leaver = asyncio.create_task(gated_engine.poll(stored_order.id, _opts()))
        await _spin(lambda: gated_engine.get_job(stored_order.id) is not None)
        stayer = asyncio.create_task(gated_engine.poll(stored_order.id, _opts()))
        job = gated_engine.get_job(stored_order.id)
        await _spin(lambda: job.waiters == 2)

        leaver.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leaver
        assert job.cancelled is False

        gate.set()
        result = await stayer
        assert result.outcome == PollOutcome.SETTLED

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(self, gated_engine, make_adapter, registry, stored_order):
        registry.register(make_adapter(script=["pending"]))

        task = asyncio.create_task(gated_engine.poll(stored_order.id, _opts()))
        await _spin(lambda: gated_engine.get_job(stored_order.id) is not None)
        job = gated_engine.get_job(stored_order.id)
        await _spin(lambda: job.next_run_at is not None)

        await gated_engine.shutdown()
        result = await task

        assert result.outcome == PollOutcome.CANCELLED
        assert gated_engine.get_job(stored_order.id) is None
