"""
Polling Engine — bounded exponential-backoff status polling.

One loop per order:

    attempt 0 runs immediately
    delay before attempt n = min(base_delay * growth_factor ** n, cap_delay)
    stop on success (settled), terminal failure (failed),
    max_attempts or the overall deadline (timeout)

Every attempt leaves a StatusEvent through the Reconciler. Upstream
outages (and per-attempt timeouts) use up an attempt and the loop carries
on; repeated NotFound ends the loop as ``failed``.

At most one loop runs per order: a second caller in this process joins
the running job, and a Redis lock keeps other instances out. A caller
that loses the lock (or whose vendor pushes updates by webhook) only
watches the stored order.

Clock and sleep are injectable so tests run without real time passing.
"""

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from redis.exceptions import RedisError

from app.config import settings
from app.core.exceptions import (
    NotFound,
    OfframpError,
    OrderNotFound,
    PollTimeout,
    ReconcileContention,
    UpstreamUnavailable,
)
from app.models.order import Order
from app.models.status_event import EventReason, EventSource
from app.providers.registry import ProviderRegistry
from app.settlement import state_machine
from app.settlement.config import POLL_LOCK_GRACE_SECONDS, POLL_LOCK_PREFIX
from app.settlement.order_store import OrderStore
from app.settlement.reconciler import Reconciler

logger = logging.getLogger(__name__)


class PollOutcome(str, enum.Enum):
    SETTLED = "settled"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class PollOptions:
    """Backoff schedule and budgets; all durations in seconds."""

    base_delay: float = field(default_factory=lambda: settings.POLL_BASE_DELAY_SECONDS)
    growth_factor: float = field(default_factory=lambda: settings.POLL_GROWTH_FACTOR)
    cap_delay: float = field(default_factory=lambda: settings.POLL_CAP_DELAY_SECONDS)
    max_attempts: int = field(default_factory=lambda: settings.POLL_MAX_ATTEMPTS)
    timeout: float = field(default_factory=lambda: settings.POLL_TIMEOUT_SECONDS)
    attempt_timeout: float = field(default_factory=lambda: settings.POLL_ATTEMPT_TIMEOUT_SECONDS)
    not_found_threshold: int = field(default_factory=lambda: settings.POLL_NOT_FOUND_THRESHOLD)

    def __post_init__(self):
        if self.base_delay < 0 or self.cap_delay < 0:
            raise ValueError("Delays cannot be negative")
        if self.growth_factor < 1:
            raise ValueError("growth_factor must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.timeout <= 0 or self.attempt_timeout <= 0:
            raise ValueError("Timeouts must be positive")
        if self.not_found_threshold < 1:
            raise ValueError("not_found_threshold must be at least 1")

    def delay_for(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return min(self.base_delay * self.growth_factor ** attempt, self.cap_delay)


@dataclass
class PollResult:
    outcome: PollOutcome
    order: Order | None
    attempts: int
    reason: str | None = None
    error: OfframpError | None = None

    @property
    def settled(self) -> bool:
        return self.outcome == PollOutcome.SETTLED

    @property
    def completed(self) -> bool:
        return self.outcome in (PollOutcome.SETTLED, PollOutcome.FAILED)


@dataclass
class PollingJob:
    order_id: uuid.UUID
    deadline: float
    attempt_number: int = 0
    next_run_at: float | None = None
    cancelled: bool = False
    waiters: int = 0
    task: asyncio.Task | None = None


class PollingEngine:
    def __init__(
        self,
        store: OrderStore,
        reconciler: Reconciler,
        registry: ProviderRegistry,
        *,
        redis=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.reconciler = reconciler
        self.registry = registry
        self.redis = redis
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[uuid.UUID, PollingJob] = {}

    # ── public API ──────────────────────────────────────────────────────

    def get_job(self, order_id: uuid.UUID) -> PollingJob | None:
        job = self._jobs.get(order_id)
        if job is None or job.task is None or job.task.done():
            return None
        return job

    async def poll(self, order_id: uuid.UUID, options: PollOptions | None = None) -> PollResult:
        """
        Poll *order_id* until it settles, fails or runs out of budget.

        Joins the running job when one exists. If the last waiting caller
        is cancelled the job is cancelled with it.
        """
        options = options or PollOptions()

        job = self.get_job(order_id)
        if job is not None:
            logger.info("Joining running poll for order %s", order_id)
        else:
            job = PollingJob(order_id=order_id, deadline=self._clock() + options.timeout)
            job.task = asyncio.create_task(self._run(job, options))
            self._jobs[order_id] = job

        job.waiters += 1
        try:
            return await asyncio.shield(job.task)
        except asyncio.CancelledError:
            if job.waiters == 1 and not job.task.done():
                logger.info("Last caller abandoned poll for order %s; cancelling", order_id)
                job.cancelled = True
                job.task.cancel()
            raise
        finally:
            job.waiters -= 1

    def cancel(self, order_id: uuid.UUID) -> bool:
        """Stop further attempts; events already recorded stay."""
        job = self.get_job(order_id)
        if job is None:
            return False
        job.cancelled = True
        job.task.cancel()
        logger.info("Poll for order %s cancelled after %d attempts", order_id, job.attempt_number)
        return True

    async def shutdown(self) -> None:
        """Cancel every running job and wait for them to unwind."""
        tasks = []
        for job in list(self._jobs.values()):
            if job.task is not None and not job.task.done():
                job.cancelled = True
                job.task.cancel()
                tasks.append(job.task)
        if tasks:
            logger.info("Shutting down %d poll jobs", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()

    # ── job body ────────────────────────────────────────────────────────

    async def _run(self, job: PollingJob, options: PollOptions) -> PollResult:
        lock = None
        try:
            order = await self.store.get_order(job.order_id)
            if order is None:
                raise OrderNotFound(f"Order {job.order_id} not found", order_id=str(job.order_id))

            done = self._finished(order, attempts=0)
            if done is not None:
                return done

            adapter = self.registry.get(order.provider)
            if adapter.supports_push_updates:
                return await self._watch(job, options, order)

            lock, acquired = await self._acquire_lock(job.order_id, options)
            if not acquired:
                logger.info("Order %s is being polled elsewhere; watching the store", job.order_id)
                return await self._watch(job, options, order)

            return await self._poll_upstream(job, options, order)
        except asyncio.CancelledError:
            if job.cancelled:
                return PollResult(PollOutcome.CANCELLED, None, job.attempt_number, reason="cancelled")
            raise
        finally:
            if lock is not None:
                await self._release_lock(lock)
            if self._jobs.get(job.order_id) is job:
                del self._jobs[job.order_id]

    async def _poll_upstream(self, job: PollingJob, options: PollOptions, order: Order) -> PollResult:
        adapter = self.registry.get(order.provider)
        consecutive_not_found = 0
        attempt = 0

        while True:
            if attempt >= options.max_attempts:
                return self._timeout(order, attempt, "max_attempts")

            delay = options.delay_for(attempt)
            if self._clock() + delay >= job.deadline:
                return self._timeout(order, attempt, "deadline")
            if delay:
                job.next_run_at = self._clock() + delay
                await self._sleep(delay)

            attempt += 1
            job.attempt_number = attempt
            observed_at = datetime.now(timezone.utc)
            per_attempt = min(options.attempt_timeout, job.deadline - self._clock())

            try:
                if per_attempt <= 0:
                    raise asyncio.TimeoutError
                snapshot = await asyncio.wait_for(
                    adapter.fetch_status(order.provider_order_id, order.local_currency),
                    timeout=per_attempt,
                )
            except (UpstreamUnavailable, asyncio.TimeoutError) as exc:
                error = str(exc) or "status lookup timed out"
                logger.warning(
                    "Poll attempt %d for order %s failed: %s", attempt, order.id, error,
                )
                await self.reconciler.record_failure(
                    provider=order.provider, source=EventSource.POLL,
                    reason=EventReason.UPSTREAM_ERROR, error=error, order=order,
                    observed_at=observed_at, attempt_number=attempt,
                )
            except NotFound as exc:
                consecutive_not_found += 1
                await self.reconciler.record_failure(
                    provider=order.provider, source=EventSource.POLL,
                    reason=EventReason.NOT_FOUND, error=str(exc), order=order,
                    observed_at=observed_at, attempt_number=attempt,
                )
                if consecutive_not_found >= options.not_found_threshold:
                    logger.warning(
                        "Order %s not found upstream %d times; giving up",
                        order.id, consecutive_not_found,
                    )
                    return PollResult(PollOutcome.FAILED, order, attempt, reason="not_found", error=exc)
            else:
                consecutive_not_found = 0
                try:
                    result = await self.reconciler.apply_observation(
                        order.id,
                        EventSource.POLL,
                        snapshot.raw_status,
                        observed_at,
                        receipt_id=snapshot.receipt_id,
                        attempt_number=attempt,
                    )
                except ReconcileContention as exc:
                    logger.warning("Poll attempt %d for order %s: %s", attempt, order.id, exc.message)
                else:
                    order = result.order
                    done = self._finished(order, attempt)
                    if done is not None:
                        return done
            finally:
                await self.store.record_poll_attempt(order.id, datetime.now(timezone.utc))

    async def _watch(self, job: PollingJob, options: PollOptions, order: Order) -> PollResult:
        """Follow the stored order on the same schedule without calling upstream."""
        reads = 0
        while True:
            if reads >= options.max_attempts:
                return self._timeout(order, reads, "max_attempts")
            delay = options.delay_for(reads + 1)
            if self._clock() + delay >= job.deadline:
                return self._timeout(order, reads, "deadline")
            job.next_run_at = self._clock() + delay
            await self._sleep(delay)

            reads += 1
            job.attempt_number = reads
            order = await self.store.get_order(job.order_id) or order
            done = self._finished(order, reads)
            if done is not None:
                return done

    # ── helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _finished(order: Order, attempts: int) -> PollResult | None:
        if state_machine.is_settled(order.canonical_status):
            return PollResult(PollOutcome.SETTLED, order, attempts, reason=order.canonical_status.value)
        if state_machine.is_failed(order.canonical_status):
            return PollResult(PollOutcome.FAILED, order, attempts, reason=order.canonical_status.value)
        return None

    @staticmethod
    def _timeout(order: Order, attempts: int, reason: str) -> PollResult:
        logger.warning("Polling order %s timed out (%s) after %d attempts", order.id, reason, attempts)
        return PollResult(
            PollOutcome.TIMEOUT,
            order,
            attempts,
            reason=reason,
            error=PollTimeout(f"Polling stopped: {reason}", order_id=str(order.id), attempts=attempts),
        )

    async def _acquire_lock(self, order_id: uuid.UUID, options: PollOptions):
        """Returns ``(lock, acquired)``; without Redis every caller acquires."""
        if self.redis is None:
            return None, True
        lock = self.redis.lock(
            f"{POLL_LOCK_PREFIX}{order_id}",
            timeout=options.timeout + POLL_LOCK_GRACE_SECONDS,
            blocking=False,
        )
        try:
            acquired = await lock.acquire()
        except RedisError:
            logger.warning("Poll lock unavailable for order %s; polling without it", order_id)
            return None, True
        if acquired:
            return lock, True
        return None, False

    async def _release_lock(self, lock) -> None:
        try:
            await lock.release()
        except RedisError:
            # Lock may have already expired
            logger.warning("Poll lock release failed (may have auto-expired)")
