"""
Pydantic schemas for the StatusEvent audit log.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.order import OrderStatus, Provider
from app.models.status_event import EventReason, EventSource


class StatusEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID | None
    provider: Provider
    provider_order_id: str | None
    source: EventSource
    raw_status: str | None
    canonical_status: OrderStatus | None
    observed_at: datetime
    applied: bool
    reason: EventReason
    dedupe_key: str | None
    error: str | None
    attempt_number: int | None
    receipt_id: str | None
    replay_of: UUID | None
    created_at: datetime
    is_replayable: bool


class StatusEventListResponse(BaseModel):
    events: list[StatusEventResponse]
    count: int


class ReplayResponse(BaseModel):
    replayed_event_id: UUID
    event_id: UUID | None
    applied: bool
    reason: str
    order_id: UUID | None = None
    canonical_status: str | None = None
