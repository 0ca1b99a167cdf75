"""
Webhook Ingestor — authenticate, decode and forward vendor push updates.

Only two failures reach the vendor as errors: a bad signature
(Unauthorized) and a body that is not JSON (MalformedPayload). Anything
after that is recorded as an ``applied=False`` StatusEvent and
acknowledged, so the vendor does not hammer us with retries; operators
re-drive recorded failures with ``replay``.
"""

import json
import logging
import uuid
from dataclasses import dataclass

from app.core.exceptions import (
    MalformedPayload,
    NotFound,
    OfframpError,
    Unauthorized,
    ValidationRejected,
)
from app.models.status_event import EventReason, EventSource, StatusEvent
from app.providers.base import ProviderAdapter, WebhookEvent
from app.providers.registry import ProviderRegistry
from app.settlement.order_store import OrderStore
from app.settlement.reconciler import Reconciler

logger = logging.getLogger(__name__)


@dataclass
class WebhookAck:
    received: bool
    applied: bool
    reason: str
    order_id: uuid.UUID | None = None
    event_id: uuid.UUID | None = None
    canonical_status: str | None = None


def dedupe_key_for(adapter: ProviderAdapter, event: WebhookEvent) -> str:
    """Vendor event id when there is one, else provider + order + raw status."""
    if event.event_id:
        return f"{adapter.provider.value}:event:{event.event_id}"
    return f"{adapter.provider.value}:{event.provider_order_id}:{event.raw_status.strip().lower()}"


class WebhookIngestor:
    def __init__(self, store: OrderStore, reconciler: Reconciler, registry: ProviderRegistry):
        self.store = store
        self.reconciler = reconciler
        self.registry = registry

    async def ingest(self, raw_body: bytes, signature: str | None, provider: str) -> WebhookAck:
        adapter = self.registry.get(provider)

        if not adapter.verify_signature(raw_body, signature):
            logger.warning("Rejected %s webhook: invalid signature", adapter.provider.value)
            raise Unauthorized("Invalid webhook signature", provider=adapter.provider.value)

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedPayload("Webhook body is not valid JSON") from exc

        try:
            return await self._process(adapter, payload)
        except Exception as exc:
            # Past authentication the vendor always gets a 200.
            logger.exception("Failed to process %s webhook", adapter.provider.value)
            return await self._processing_error(
                exc, provider=adapter.provider,
                payload=payload if isinstance(payload, dict) else None,
            )

    async def replay(self, event_id: uuid.UUID) -> WebhookAck:
        """Re-drive a recorded webhook failure; the original row is left as is."""
        original = await self.store.get_event(event_id)
        if original is None:
            raise NotFound(f"Status event {event_id} not found", event_id=str(event_id))
        if not original.is_replayable:
            raise ValidationRejected(
                f"Status event {event_id} is not a replayable webhook failure",
                reason=original.reason.value,
            )
        adapter = self.registry.get(original.provider)
        logger.info("Replaying %s webhook event %s", adapter.provider.value, event_id)
        return await self._process(adapter, original.payload or {}, replay_of=original.id)

    async def _process(
        self, adapter: ProviderAdapter, payload, replay_of: uuid.UUID | None = None,
    ) -> WebhookAck:
        provider = adapter.provider

        if not isinstance(payload, dict):
            event = await self.reconciler.record_failure(
                provider=provider, source=EventSource.WEBHOOK,
                reason=EventReason.INVALID_PAYLOAD, error="Webhook body is not a JSON object",
                replay_of=replay_of,
            )
            return _ack(event)

        try:
            parsed = adapter.parse_webhook(payload)
        except ValidationRejected as exc:
            logger.warning("Unrecognized %s webhook: %s", provider.value, exc.message)
            event = await self.reconciler.record_failure(
                provider=provider, source=EventSource.WEBHOOK,
                reason=EventReason.INVALID_PAYLOAD, error=exc.message,
                payload=payload, replay_of=replay_of,
            )
            return _ack(event)

        dedupe_key = dedupe_key_for(adapter, parsed)
        order = await self.store.get_order_by_provider_id(provider, parsed.provider_order_id)
        if order is None:
            logger.warning(
                "%s webhook for unknown order %s (%s)",
                provider.value, parsed.provider_order_id, parsed.raw_status,
            )
            event = await self.reconciler.record_failure(
                provider=provider, source=EventSource.WEBHOOK,
                reason=EventReason.ORDER_NOT_FOUND,
                error=f"No order for {provider.value}:{parsed.provider_order_id}",
                provider_order_id=parsed.provider_order_id, raw_status=parsed.raw_status,
                observed_at=parsed.observed_at, dedupe_key=dedupe_key,
                payload=payload, replay_of=replay_of,
            )
            return _ack(event)

        try:
            result = await self.reconciler.apply_observation(
                order.id,
                EventSource.WEBHOOK,
                parsed.raw_status,
                parsed.observed_at,
                receipt_id=parsed.receipt_id,
                dedupe_key=dedupe_key,
                payload=payload,
                replay_of=replay_of,
            )
        except Exception as exc:
            logger.exception("Failed to reconcile %s webhook for order %s", provider.value, order.id)
            return await self._processing_error(
                exc, provider=provider, order=order,
                raw_status=parsed.raw_status, observed_at=parsed.observed_at,
                dedupe_key=dedupe_key, payload=payload, replay_of=replay_of,
            )

        return WebhookAck(
            received=True,
            applied=result.applied,
            reason=result.reason.value,
            order_id=order.id,
            event_id=result.event.id,
            canonical_status=result.new_canonical_status.value,
        )

    async def _processing_error(self, exc: Exception, **fields) -> WebhookAck:
        """Record a PROCESSING_ERROR event; still ack when the store is unavailable."""
        try:
            event = await self.reconciler.record_failure(
                source=EventSource.WEBHOOK, reason=EventReason.PROCESSING_ERROR,
                error=_describe(exc), **fields,
            )
        except Exception:
            logger.exception("Could not record failed %s webhook", fields["provider"].value)
            order = fields.get("order")
            return WebhookAck(
                received=True,
                applied=False,
                reason=EventReason.PROCESSING_ERROR.value,
                order_id=order.id if order is not None else None,
            )
        return _ack(event)


def _ack(event: StatusEvent) -> WebhookAck:
    return WebhookAck(
        received=True,
        applied=False,
        reason=event.reason.value,
        order_id=event.order_id,
        event_id=event.id,
    )


def _describe(exc: Exception) -> str:
    if isinstance(exc, OfframpError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"
