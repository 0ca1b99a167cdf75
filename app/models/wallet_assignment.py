"""
Wallet assignment model — one deposit address per (user, platform).

``assigned_address`` moves from NULL to a value exactly once; the write is
guarded by ``WHERE assigned_address IS NULL`` in the store.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, UniqueConstraint, Enum as SAEnum, event
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, enum_values


class Platform(str, enum.Enum):
    FARCASTER = "farcaster"
    BASEAPP = "baseapp"
    WEB = "web"


class WalletAssignment(Base):
    __tablename__ = "wallet_assignments"
    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_wallet_assignments_user_platform"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    platform: Mapped[Platform] = mapped_column(
        SAEnum(Platform, name="platform", values_callable=enum_values), nullable=False,
    )
    assigned_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_provider_resource_id: Mapped[str | None] = mapped_column(String(128))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<WalletAssignment {self.user_id}/{self.platform.value if self.platform else '?'} "
            f"address={self.assigned_address}>"
        )


@event.listens_for(WalletAssignment, "init")
def _set_assignment_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "created_at" not in kwargs:
        target.created_at = datetime.now(timezone.utc)
    if "updated_at" not in kwargs:
        target.updated_at = datetime.now(timezone.utc)
