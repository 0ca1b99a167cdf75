"""
Wallet Assignment Store — persistence for (user, platform) deposit addresses.

``claim_address`` is the only write to ``assigned_address`` and it is
conditional:

    UPDATE wallet_assignments SET assigned_address = :addr ...
    WHERE user_id = :u AND platform = :p AND assigned_address IS NULL

so concurrent provisioners agree on a single winner without locks.
"""

import uuid
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.wallet_assignment import Platform, WalletAssignment


class WalletStore(Protocol):
    async def ensure_row(self, user_id: str, platform: Platform) -> None: ...

    async def get(self, user_id: str, platform: Platform) -> WalletAssignment | None: ...

    async def claim_address(
        self, user_id: str, platform: Platform, address: str, resource_id: str,
    ) -> bool: ...


class SqlWalletStore:
    """PostgreSQL-backed WalletStore."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def ensure_row(self, user_id: str, platform: Platform) -> None:
        """Insert the (user, platform) row if missing; never touches the address."""
        now = datetime.now(timezone.utc)
        stmt = (
            pg_insert(WalletAssignment)
            .values(
                id=uuid.uuid4(),
                user_id=user_id,
                platform=platform,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "platform"])
        )
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(stmt)

    async def get(self, user_id: str, platform: Platform) -> WalletAssignment | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WalletAssignment).where(
                    WalletAssignment.user_id == user_id,
                    WalletAssignment.platform == platform,
                )
            )
            return result.scalar_one_or_none()

    async def claim_address(
        self, user_id: str, platform: Platform, address: str, resource_id: str,
    ) -> bool:
        """True if this call set the address; False if someone else already had."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WalletAssignment)
                    .where(
                        WalletAssignment.user_id == user_id,
                        WalletAssignment.platform == platform,
                        WalletAssignment.assigned_address.is_(None),
                    )
                    .values(
                        assigned_address=address,
                        external_provider_resource_id=resource_id,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
