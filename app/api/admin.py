"""
Admin endpoints — StatusEvent audit log and webhook replay.

Operators use these to inspect why an order did (or did not) move and to
re-drive webhook deliveries that failed after being acknowledged.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_order_store, get_webhook_ingestor
from app.schemas.events import (
    ReplayResponse,
    StatusEventListResponse,
    StatusEventResponse,
)
from app.settlement.order_store import OrderStore
from app.settlement.webhook_ingestor import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/status-events", response_model=StatusEventListResponse)
async def list_status_events(
    order_id: UUID | None = None,
    failed_only: bool = False,
    limit: int = Query(100, ge=1, le=500),
    store: OrderStore = Depends(get_order_store),
):
    """List StatusEvents, newest first; ``failed_only`` keeps replayable failures."""
    events = await store.list_events(order_id=order_id, failed_only=failed_only, limit=limit)
    return StatusEventListResponse(
        events=[StatusEventResponse.model_validate(e) for e in events],
        count=len(events),
    )


@router.post("/status-events/{event_id}/replay", response_model=ReplayResponse)
async def replay_status_event(
    event_id: UUID,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """Re-drive a failed webhook delivery through the Reconciler."""
    ack = await ingestor.replay(event_id)
    logger.info("Replayed event %s: applied=%s reason=%s", event_id, ack.applied, ack.reason)
    return ReplayResponse(
        replayed_event_id=event_id,
        event_id=ack.event_id,
        applied=ack.applied,
        reason=ack.reason,
        order_id=ack.order_id,
        canonical_status=ack.canonical_status,
    )
