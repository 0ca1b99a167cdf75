"""
Provider webhook endpoint — POST /webhooks/{provider}.

Responses:
  200  acknowledged (applied or recorded as a failed StatusEvent)
  400  body is not JSON
  401  signature missing or invalid
  404  no adapter registered under that provider name
"""

import logging

from fastapi import APIRouter, Depends, Request

from app.api.deps import get_provider_registry, get_webhook_ingestor
from app.providers.registry import ProviderRegistry
from app.schemas.webhook import WebhookAckResponse
from app.settlement.webhook_ingestor import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{provider}", response_model=WebhookAckResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    registry: ProviderRegistry = Depends(get_provider_registry),
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """Verify, decode and reconcile one provider notification."""
    adapter = registry.get(provider)
    raw_body = await request.body()
    signature = request.headers.get(adapter.signature_header)

    ack = await ingestor.ingest(raw_body, signature, provider)

    logger.info(
        "%s webhook acknowledged: applied=%s reason=%s order=%s",
        adapter.provider.value, ack.applied, ack.reason, ack.order_id,
    )
    return WebhookAckResponse(
        received=ack.received,
        applied=ack.applied,
        reason=ack.reason,
        order_id=ack.order_id,
        event_id=ack.event_id,
        canonical_status=ack.canonical_status,
    )
