"""
Order Store — persistence seam for Orders and the StatusEvent log.

The Reconciler only ever changes ``canonical_status`` through
``commit_transition``, a compare-and-set:

    UPDATE orders SET ... WHERE id = :id AND canonical_status = :expected

executed in the same database transaction as the ``applied=True``
StatusEvent insert. Zero rows updated means another writer got there
first; the caller re-reads and decides again.

Each method opens its own short session so observations commit
independently of whatever long-running loop produced them.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, Protocol

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from app.core.exceptions import ValidationRejected
from app.models.order import Order, OrderStatus, Provider
from app.models.status_event import (
    REPLAYABLE_REASONS,
    EventSource,
    StatusEvent,
)
from app.settlement.state_machine import TERMINAL_STATES

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class OrderStore(Protocol):
    async def create_order(self, order: Order) -> Order: ...

    async def get_order(self, order_id: uuid.UUID) -> Order | None: ...

    async def get_order_by_provider_id(
        self, provider: Provider, provider_order_id: str,
    ) -> Order | None: ...

    async def commit_transition(
        self,
        order_id: uuid.UUID,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        *,
        raw_status: str | None,
        completed_at: datetime | None,
        receipt_id: str | None,
        event: StatusEvent,
    ) -> Order | None: ...

    async def append_event(self, event: StatusEvent) -> StatusEvent: ...

    async def record_poll_attempt(self, order_id: uuid.UUID, polled_at: datetime) -> None: ...

    async def has_applied_event(self, dedupe_key: str) -> bool: ...

    async def get_event(self, event_id: uuid.UUID) -> StatusEvent | None: ...

    async def list_events(
        self,
        order_id: uuid.UUID | None = None,
        failed_only: bool = False,
        limit: int = 100,
    ) -> list[StatusEvent]: ...

    async def list_replayable_events(
        self, created_after: datetime, limit: int = 100,
    ) -> list[StatusEvent]: ...

    async def list_open_orders(
        self,
        providers: Iterable[Provider],
        polled_before: datetime,
        limit: int = 100,
    ) -> list[Order]: ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlOrderStore:
    """PostgreSQL-backed OrderStore."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── orders ──────────────────────────────────────────────────────────

    async def create_order(self, order: Order) -> Order:
        async with self._session_factory() as session:
            session.add(order)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValidationRejected(
                    f"Order {order.provider.value}:{order.provider_order_id} already exists",
                )
        return order

    async def get_order(self, order_id: uuid.UUID) -> Order | None:
        async with self._session_factory() as session:
            return await session.get(Order, order_id)

    async def get_order_by_provider_id(
        self, provider: Provider, provider_order_id: str,
    ) -> Order | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order).where(
                    Order.provider == provider,
                    Order.provider_order_id == provider_order_id,
                )
            )
            return result.scalar_one_or_none()

    async def commit_transition(
        self,
        order_id: uuid.UUID,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        *,
        raw_status: str | None,
        completed_at: datetime | None,
        receipt_id: str | None,
        event: StatusEvent,
    ) -> Order | None:
        values = {
            "canonical_status": new_status,
            "provider_raw_status": raw_status,
            "updated_at": datetime.now(timezone.utc),
        }
        if completed_at is not None:
            values["completed_at"] = completed_at
        if receipt_id:
            values["settlement_receipt_id"] = receipt_id

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Order)
                    .where(
                        Order.id == order_id,
                        Order.canonical_status == expected_status,
                    )
                    .values(**values)
                    .returning(Order)
                    .execution_options(synchronize_session=False)
                )
                order = result.scalar_one_or_none()
                if order is None:
                    return None
                session.add(event)
        return order

    async def record_poll_attempt(self, order_id: uuid.UUID, polled_at: datetime) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .values(
                        poll_attempt_count=Order.poll_attempt_count + 1,
                        last_polled_at=polled_at,
                    )
                    .execution_options(synchronize_session=False)
                )

    async def list_open_orders(
        self,
        providers: Iterable[Provider],
        polled_before: datetime,
        limit: int = 100,
    ) -> list[Order]:
        """Non-terminal orders of *providers* not polled since *polled_before*."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(
                    Order.provider.in_(list(providers)),
                    Order.canonical_status.not_in(list(TERMINAL_STATES)),
                    (Order.last_polled_at.is_(None)) | (Order.last_polled_at < polled_before),
                )
                .order_by(Order.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── status events ───────────────────────────────────────────────────

    async def append_event(self, event: StatusEvent) -> StatusEvent:
        async with self._session_factory() as session:
            session.add(event)
            await session.commit()
        return event

    async def has_applied_event(self, dedupe_key: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    exists().where(
                        StatusEvent.dedupe_key == dedupe_key,
                        StatusEvent.applied.is_(True),
                    )
                )
            )
            return bool(result.scalar())

    async def get_event(self, event_id: uuid.UUID) -> StatusEvent | None:
        async with self._session_factory() as session:
            return await session.get(StatusEvent, event_id)

    async def list_events(
        self,
        order_id: uuid.UUID | None = None,
        failed_only: bool = False,
        limit: int = 100,
    ) -> list[StatusEvent]:
        query = select(StatusEvent)
        if order_id is not None:
            query = query.where(StatusEvent.order_id == order_id)
        if failed_only:
            query = query.where(
                StatusEvent.applied.is_(False),
                StatusEvent.reason.in_(list(REPLAYABLE_REASONS)),
            )
        query = query.order_by(StatusEvent.created_at.desc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_replayable_events(
        self, created_after: datetime, limit: int = 100,
    ) -> list[StatusEvent]:
        """Failed webhook events that no later event has replayed yet."""
        replay = aliased(StatusEvent)
        async with self._session_factory() as session:
            result = await session.execute(
                select(StatusEvent)
                .where(
                    StatusEvent.source == EventSource.WEBHOOK,
                    StatusEvent.applied.is_(False),
                    StatusEvent.reason.in_(list(REPLAYABLE_REASONS)),
                    StatusEvent.created_at >= created_after,
                    ~exists().where(replay.replay_of == StatusEvent.id),
                )
                .order_by(StatusEvent.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())
