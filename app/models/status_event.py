"""
StatusEvent model — append-only audit log of every observed vendor status.

Rows are never updated. A rejected or failed observation is kept with
``applied=False`` and a ``reason``; operator replays append new rows.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Enum as SAEnum,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, enum_values
from app.models.order import OrderStatus, Provider


class EventSource(str, enum.Enum):
    WEBHOOK = "webhook"
    POLL = "poll"


class EventReason(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    TERMINAL_CONFLICT = "terminal_conflict"
    UNKNOWN_STATUS = "unknown_status"
    UPSTREAM_ERROR = "upstream_error"
    NOT_FOUND = "not_found"
    ORDER_NOT_FOUND = "order_not_found"
    INVALID_PAYLOAD = "invalid_payload"
    PROCESSING_ERROR = "processing_error"


# Reasons an operator may re-drive through the Reconciler.
REPLAYABLE_REASONS = frozenset({
    EventReason.ORDER_NOT_FOUND,
    EventReason.PROCESSING_ERROR,
})


class StatusEvent(Base):
    __tablename__ = "status_events"
    __table_args__ = (
        Index("ix_status_events_order_observed", "order_id", "observed_at"),
        Index("ix_status_events_dedupe_applied", "dedupe_key", "applied"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    order_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=True,
    )
    provider: Mapped[Provider] = mapped_column(
        SAEnum(Provider, name="provider", values_callable=enum_values), nullable=False,
    )
    provider_order_id: Mapped[str | None] = mapped_column(String(128))

    source: Mapped[EventSource] = mapped_column(
        SAEnum(EventSource, name="eventsource", values_callable=enum_values), nullable=False,
    )
    raw_status: Mapped[str | None] = mapped_column(String(64))
    canonical_status: Mapped[OrderStatus | None] = mapped_column(
        SAEnum(OrderStatus, name="orderstatus", values_callable=enum_values), nullable=True,
    )
    observed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reason: Mapped[EventReason] = mapped_column(
        SAEnum(EventReason, name="eventreason", values_callable=enum_values), nullable=False,
    )
    dedupe_key: Mapped[str | None] = mapped_column(String(256))
    error: Mapped[str | None] = mapped_column(Text)
    attempt_number: Mapped[int | None] = mapped_column(Integer)
    receipt_id: Mapped[str | None] = mapped_column(String(128))
    payload: Mapped[dict | None] = mapped_column(JSONB)
    replay_of: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("status_events.id"), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_replayable(self) -> bool:
        return (
            not self.applied
            and self.source == EventSource.WEBHOOK
            and self.reason in REPLAYABLE_REASONS
        )

    def __repr__(self) -> str:
        return (
            f"<StatusEvent {self.source.value} {self.raw_status} "
            f"applied={self.applied} reason={self.reason.value}>"
        )


@event.listens_for(StatusEvent, "init")
def _set_event_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "applied" not in kwargs:
        target.applied = False
    if "observed_at" not in kwargs:
        target.observed_at = datetime.now(timezone.utc)
    if "created_at" not in kwargs:
        target.created_at = datetime.now(timezone.utc)
