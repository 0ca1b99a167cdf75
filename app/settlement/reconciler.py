"""
Reconciler — the single authority that moves an Order's canonical status.

Both the Polling Engine and the Webhook Ingestor hand every observation
here. Rules, in order:

1. Already terminal and the observation maps to the same terminal:
   accepted as an idempotent no-op.
2. Already terminal and the observation maps elsewhere: rejected and
   logged as a vendor inconsistency; never auto-corrected.
3. The same state: an accepted no-op. Not a valid forward transition
   from the committed state: rejected as stale.
4. Otherwise commit through the store's compare-and-set, stamping
   ``completed_at`` on SETTLED, together with an ``applied=True`` event.

Every observation, applied or not, leaves exactly one StatusEvent.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from app.core.exceptions import (
    ConflictTerminalStateMismatch,
    OrderNotFound,
    ReconcileContention,
)
from app.models.order import Order, OrderStatus
from app.models.status_event import EventReason, EventSource, StatusEvent
from app.providers.registry import ProviderRegistry
from app.settlement import state_machine
from app.settlement.config import MAX_CAS_RETRIES
from app.settlement.order_store import OrderStore
from app.settlement.state_machine import Decision

logger = logging.getLogger(__name__)

_DECISION_REASONS = {
    Decision.DUPLICATE: EventReason.DUPLICATE,
    Decision.STALE: EventReason.STALE,
    Decision.TERMINAL_CONFLICT: EventReason.TERMINAL_CONFLICT,
    Decision.UNKNOWN: EventReason.UNKNOWN_STATUS,
}


@dataclass
class ReconcileResult:
    accepted: bool
    applied: bool
    new_canonical_status: OrderStatus
    observed_status: OrderStatus
    reason: EventReason
    order: Order
    event: StatusEvent
    conflict: ConflictTerminalStateMismatch | None = None

    @property
    def is_settled(self) -> bool:
        return state_machine.is_settled(self.new_canonical_status)


class Reconciler:
    """Applies vendor observations to Orders through conditional commits."""

    def __init__(self, store: OrderStore, registry: ProviderRegistry):
        self.store = store
        self.registry = registry

    async def apply_observation(
        self,
        order_id: uuid.UUID,
        source: EventSource,
        raw_status: str,
        observed_at: datetime | None = None,
        *,
        receipt_id: str | None = None,
        dedupe_key: str | None = None,
        attempt_number: int | None = None,
        payload: dict | None = None,
        replay_of: uuid.UUID | None = None,
    ) -> ReconcileResult:
        observed_at = observed_at or datetime.now(timezone.utc)

        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=str(order_id))

        adapter = self.registry.get(order.provider)
        observed = adapter.normalize(raw_status)

        def _event(applied: bool, reason: EventReason, error: str | None = None) -> StatusEvent:
            return StatusEvent(
                order_id=order.id,
                provider=order.provider,
                provider_order_id=order.provider_order_id,
                source=source,
                raw_status=raw_status,
                canonical_status=observed,
                observed_at=observed_at,
                applied=applied,
                reason=reason,
                dedupe_key=dedupe_key,
                error=error,
                attempt_number=attempt_number,
                receipt_id=receipt_id,
                payload=payload,
                replay_of=replay_of,
            )

        # A delivery whose key already produced a transition is a replay of
        # the same vendor event, whatever the order has done since.
        if dedupe_key and await self.store.has_applied_event(dedupe_key):
            event = await self.store.append_event(_event(False, EventReason.DUPLICATE))
            logger.info(
                "Duplicate delivery for order %s (%s, key=%s)",
                order.id, raw_status, dedupe_key,
            )
            return self._result(True, False, order, observed, EventReason.DUPLICATE, event)

        for _ in range(MAX_CAS_RETRIES):
            current = order.canonical_status
            decision = state_machine.decide(current, observed)

            if decision != Decision.APPLY:
                return await self._reject(order, observed, decision, _event)

            completed_at = observed_at if observed in state_machine.TERMINAL_SUCCESS_STATES else None
            applied_event = _event(True, EventReason.APPLIED)
            committed = await self.store.commit_transition(
                order.id,
                current,
                observed,
                raw_status=raw_status,
                completed_at=completed_at,
                receipt_id=receipt_id if state_machine.is_settled(observed) else None,
                event=applied_event,
            )
            if committed is not None:
                logger.info(
                    "Order %s: %s -> %s via %s (raw=%s)",
                    order.id, current.value, observed.value, source.value, raw_status,
                )
                return ReconcileResult(
                    accepted=True,
                    applied=True,
                    new_canonical_status=committed.canonical_status,
                    observed_status=observed,
                    reason=EventReason.APPLIED,
                    order=committed,
                    event=applied_event,
                )

            # Lost the compare-and-set: re-read and decide again.
            logger.debug("CAS lost for order %s at %s; retrying", order.id, current.value)
            order = await self.store.get_order(order.id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id=str(order_id))

        raise ReconcileContention(
            f"Could not commit {observed.value} for order {order_id} "
            f"after {MAX_CAS_RETRIES} attempts",
        )

    async def _reject(self, order, observed, decision, make_event) -> ReconcileResult:
        reason = _DECISION_REASONS[decision]
        current = order.canonical_status
        conflict = None
        error = None

        if decision == Decision.TERMINAL_CONFLICT:
            conflict = ConflictTerminalStateMismatch(
                f"Order {order.id} is {current.value} but vendor reports {observed.value}",
                order_id=str(order.id),
                committed=current.value,
                reported=observed.value,
            )
            error = conflict.message
            logger.error("Terminal state mismatch (manual review): %s", conflict.message)
        elif decision == Decision.STALE:
            logger.info(
                "Stale observation for order %s: %s is not after %s",
                order.id, observed.value, current.value,
            )
        elif decision == Decision.UNKNOWN:
            logger.warning("Unmapped vendor status for order %s; no transition", order.id)

        event = await self.store.append_event(make_event(False, reason, error))
        accepted = decision == Decision.DUPLICATE
        return self._result(accepted, False, order, observed, reason, event, conflict)

    @staticmethod
    def _result(accepted, applied, order, observed, reason, event, conflict=None) -> ReconcileResult:
        return ReconcileResult(
            accepted=accepted,
            applied=applied,
            new_canonical_status=order.canonical_status,
            observed_status=observed,
            reason=reason,
            order=order,
            event=event,
            conflict=conflict,
        )

    async def record_failure(
        self,
        *,
        provider,
        source: EventSource,
        reason: EventReason,
        error: str,
        order: Order | None = None,
        provider_order_id: str | None = None,
        raw_status: str | None = None,
        observed_at: datetime | None = None,
        dedupe_key: str | None = None,
        attempt_number: int | None = None,
        payload: dict | None = None,
        replay_of: uuid.UUID | None = None,
    ) -> StatusEvent:
        """Log an observation that never reached a decision (upstream or lookup failure)."""
        event = StatusEvent(
            order_id=order.id if order is not None else None,
            provider=provider,
            provider_order_id=order.provider_order_id if order is not None else provider_order_id,
            source=source,
            raw_status=raw_status,
            canonical_status=None,
            observed_at=observed_at or datetime.now(timezone.utc),
            applied=False,
            reason=reason,
            dedupe_key=dedupe_key,
            error=error,
            attempt_number=attempt_number,
            payload=payload,
            replay_of=replay_of,
        )
        return await self.store.append_event(event)
