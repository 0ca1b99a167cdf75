"""
Webhook acknowledgement returned to providers.
"""

from uuid import UUID

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    received: bool
    applied: bool
    reason: str
    order_id: UUID | None = None
    event_id: UUID | None = None
    canonical_status: str | None = None
