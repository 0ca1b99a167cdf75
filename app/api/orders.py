"""
Order endpoints — create, read, status check and polling control.

Create flow:
  1. Resolve the exchange rate (given, or the provider's current rate)
  2. Split the local total into recipient amount + platform fee, once
  3. Create the order upstream
  4. Persist it (destination encrypted) in INITIATED
  5. Forward the provider's initial status to the Reconciler
  6. Pull-only providers: queue a background poll
"""

import logging
import uuid
from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.api.deps import (
    get_order_store,
    get_polling_engine,
    get_provider_registry,
    get_reconciler,
)
from app.core.exceptions import OrderNotFound, ValidationRejected
from app.models.order import Order, OrderStatus
from app.models.status_event import EventSource
from app.providers.base import OffRampRequest
from app.providers.registry import ProviderRegistry
from app.schemas.order import (
    OrderCreateRequest,
    OrderResponse,
    PollCancelResponse,
    PollRequest,
    PollResponse,
    StatusCheckResponse,
)
from app.settlement.fees import local_total_from_stablecoin, split_total
from app.settlement.order_store import OrderStore
from app.settlement.poller import PollingEngine, PollOptions, PollOutcome, PollResult
from app.settlement.reconciler import Reconciler
from app.tasks.polling_tasks import poll_order

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _load_order(store: OrderStore, order_id: UUID) -> Order:
    order = await store.get_order(order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=str(order_id))
    return order


def _poll_options(payload: PollRequest | None) -> PollOptions:
    """Request values are milliseconds; the engine works in seconds."""
    overrides = {}
    if payload is not None:
        if payload.max_attempts is not None:
            overrides["max_attempts"] = payload.max_attempts
        if payload.base_delay is not None:
            overrides["base_delay"] = payload.base_delay / 1000
        if payload.timeout_ms is not None:
            overrides["timeout"] = payload.timeout_ms / 1000
        if payload.growth_factor is not None:
            overrides["growth_factor"] = payload.growth_factor
        if payload.cap_delay is not None:
            overrides["cap_delay"] = payload.cap_delay / 1000
    try:
        return PollOptions(**overrides)
    except ValueError as exc:
        raise ValidationRejected(str(exc))


def _poll_message(result: PollResult) -> str:
    if result.outcome == PollOutcome.SETTLED:
        return f"Order settled after {result.attempts} attempts"
    if result.outcome == PollOutcome.FAILED:
        return f"Order failed: {result.reason}"
    if result.outcome == PollOutcome.CANCELLED:
        return "Polling cancelled"
    return f"Polling timed out ({result.reason}) after {result.attempts} attempts"


# ---------------------------------------------------------------------------
# POST / — Create order
# ---------------------------------------------------------------------------


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreateRequest,
    store: OrderStore = Depends(get_order_store),
    reconciler: Reconciler = Depends(get_reconciler),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """Create an off-ramp order with the chosen provider."""
    adapter = registry.get(payload.provider)

    exchange_rate = payload.exchange_rate
    if exchange_rate is None:
        exchange_rate = await adapter.fetch_rate(payload.local_currency, payload.source_amount)

    try:
        total = local_total_from_stablecoin(payload.source_amount, exchange_rate)
        split = split_total(total)
    except ValueError as exc:
        raise ValidationRejected(str(exc))
    if split.recipient_amount <= 0:
        raise ValidationRejected("Amount is too small to cover the platform fee")

    order_id = uuid.uuid4()
    created = await adapter.create_order(
        OffRampRequest(
            order_id=order_id,
            source_amount=payload.source_amount,
            local_currency=payload.local_currency,
            destination=payload.destination,
            account_name=payload.account_name,
            fee_split=split,
            exchange_rate=exchange_rate,
            return_address=payload.return_address,
            transaction_hash=payload.transaction_hash,
        )
    )

    order = Order(
        id=order_id,
        provider=payload.provider,
        provider_order_id=created.provider_order_id,
        source_amount=payload.source_amount,
        local_amount=split.recipient_amount,
        local_currency=payload.local_currency,
        fee_amount=split.fee,
        fee_rate=split.rate,
        exchange_rate=exchange_rate,
        account_name=payload.account_name,
        receive_address=created.receive_address,
        return_address=payload.return_address,
        transaction_hash=payload.transaction_hash,
        expires_at=created.expires_at,
        provider_raw_status=created.raw_status,
    )
    order.set_destination(payload.destination)
    order = await store.create_order(order)

    logger.info(
        "Order created: %s (%s:%s) %s USDC -> %s %s + fee %s",
        order.id, payload.provider.value, created.provider_order_id,
        payload.source_amount, split.recipient_amount, payload.local_currency.value, split.fee,
    )

    if adapter.normalize(created.raw_status) not in (OrderStatus.INITIATED, OrderStatus.UNKNOWN):
        result = await reconciler.apply_observation(order.id, EventSource.POLL, created.raw_status)
        order = result.order

    if not adapter.supports_push_updates:
        poll_order.delay(str(order.id))

    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# GET /{order_id}
# ---------------------------------------------------------------------------


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: UUID, store: OrderStore = Depends(get_order_store)):
    """Get an order as currently stored."""
    return OrderResponse.model_validate(await _load_order(store, order_id))


# ---------------------------------------------------------------------------
# GET /{order_id}/status — one upstream lookup
# ---------------------------------------------------------------------------


@router.get("/{order_id}/status", response_model=StatusCheckResponse)
async def check_status(
    order_id: UUID,
    store: OrderStore = Depends(get_order_store),
    reconciler: Reconciler = Depends(get_reconciler),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """
    Ask the provider once and forward what it says to the Reconciler.

    Returns the canonical status after reconciliation alongside the raw
    vendor status.
    """
    order = await _load_order(store, order_id)
    adapter = registry.get(order.provider)

    snapshot = await adapter.fetch_status(order.provider_order_id, order.local_currency)
    result = await reconciler.apply_observation(
        order.id, EventSource.POLL, snapshot.raw_status, receipt_id=snapshot.receipt_id,
    )

    return StatusCheckResponse(
        order_id=order.id,
        provider_order_id=order.provider_order_id,
        raw_status=snapshot.raw_status,
        observed_status=result.observed_status.value,
        canonical_status=result.new_canonical_status,
        applied=result.applied,
        reason=result.reason.value,
        is_settled=result.is_settled,
    )


# ---------------------------------------------------------------------------
# POST / DELETE /{order_id}/poll
# ---------------------------------------------------------------------------


@router.post("/{order_id}/poll", response_model=PollResponse)
async def poll(
    order_id: UUID,
    payload: PollRequest | None = None,
    engine: PollingEngine = Depends(get_polling_engine),
):
    """Poll until the order settles, fails or the budget runs out."""
    result = await engine.poll(order_id, _poll_options(payload))

    return PollResponse(
        success=result.completed,
        completed=result.completed,
        settled=result.settled,
        outcome=result.outcome.value,
        attempts=result.attempts,
        order=OrderResponse.model_validate(result.order) if result.order is not None else None,
        message=_poll_message(result),
    )


@router.delete("/{order_id}/poll", response_model=PollCancelResponse)
async def cancel_poll(order_id: UUID, engine: PollingEngine = Depends(get_polling_engine)):
    """Stop a running poll; recorded attempts stay."""
    return PollCancelResponse(order_id=order_id, cancelled=engine.cancel(order_id))
