"""
Order model — one off-ramp attempt (USDC in, local currency out).

- One row per (provider, provider_order_id)
- Canonical status mutated only through the Reconciler's conditional commit
- Recipient details Fernet-encrypted at rest
- Fee split computed once at creation and persisted
"""

import enum
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Enum as SAEnum,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.core.crypto import decrypt_value, encrypt_value
from app.database import Base, enum_values

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Provider(str, enum.Enum):
    PAYCREST = "paycrest"
    PRETIUM = "pretium"


class OrderStatus(str, enum.Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    VALIDATED = "validated"
    SETTLED = "settled"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # Normalization sentinel; never stored on an Order.
    UNKNOWN = "unknown"


class LocalCurrency(str, enum.Enum):
    KES = "KES"
    GHS = "GHS"
    NGN = "NGN"
    UGX = "UGX"


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("provider", "provider_order_id", name="uq_orders_provider_order"),
        CheckConstraint("source_amount > 0", name="ck_orders_source_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )

    # Vendor identity
    provider: Mapped[Provider] = mapped_column(
        SAEnum(Provider, name="provider", values_callable=enum_values), nullable=False,
    )
    provider_order_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Amounts
    source_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=6), nullable=False,
    )
    local_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), nullable=False,
    )
    local_currency: Mapped[LocalCurrency] = mapped_column(
        SAEnum(LocalCurrency, name="localcurrency", values_callable=enum_values), nullable=False,
    )
    fee_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), default=Decimal("0"),
    )
    fee_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=6, scale=4), default=Decimal("0"),
    )
    exchange_rate: Mapped[Decimal | None] = mapped_column(
        Numeric(precision=18, scale=6), nullable=True,
    )

    # Recipient
    destination_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    destination: Mapped[str] = mapped_column(Text, nullable=False)  # encrypted JSON
    account_name: Mapped[str | None] = mapped_column(String(200))

    # Deposit / chain
    receive_address: Mapped[str | None] = mapped_column(String(128))
    return_address: Mapped[str | None] = mapped_column(String(128))
    transaction_hash: Mapped[str | None] = mapped_column(String(128))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Status
    canonical_status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus, name="orderstatus", values_callable=enum_values),
        default=OrderStatus.INITIATED,
        nullable=False,
    )
    provider_raw_status: Mapped[str | None] = mapped_column(String(64))
    settlement_receipt_id: Mapped[str | None] = mapped_column(String(128))

    # Polling bookkeeping
    poll_attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_polled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Lifecycle timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # ------------------------------------------------------------------
    # Encrypted destination helpers
    # ------------------------------------------------------------------

    def set_destination(self, destination) -> None:
        """Encrypt and store a Destination (any member of the tagged union)."""
        self.destination_kind = destination.kind
        self.destination = encrypt_value(destination.model_dump_json())

    def get_destination(self):
        """Decrypt and return the stored Destination."""
        from app.schemas.destination import parse_destination
        return parse_destination(json.loads(decrypt_value(self.destination)))

    @property
    def destination_hint(self) -> str | None:
        """Last four digits of the recipient number, safe to display."""
        if not self.destination:
            return None
        dest = self.get_destination()
        number = getattr(dest, "phone_number", None) or getattr(dest, "till_number", None) or dest.account_number
        return "****" + number[-4:]

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    @property
    def is_settled(self) -> bool:
        """VALIDATED and SETTLED are both user-facing success."""
        return self.canonical_status in (OrderStatus.VALIDATED, OrderStatus.SETTLED)

    def __repr__(self) -> str:
        return (
            f"<Order {self.provider.value if self.provider else '?'}:"
            f"{self.provider_order_id} "
            f"status={self.canonical_status.value if self.canonical_status else 'N/A'}>"
        )


# ---------------------------------------------------------------------------
# Auto-set Python-side defaults on construction
# ---------------------------------------------------------------------------


@event.listens_for(Order, "init")
def _set_order_defaults(target, args, kwargs):
    if "id" not in kwargs:
        target.id = uuid.uuid4()
    if "canonical_status" not in kwargs:
        target.canonical_status = OrderStatus.INITIATED
    if "fee_amount" not in kwargs:
        target.fee_amount = Decimal("0")
    if "fee_rate" not in kwargs:
        target.fee_rate = Decimal("0")
    if "poll_attempt_count" not in kwargs:
        target.poll_attempt_count = 0
    if "created_at" not in kwargs:
        target.created_at = datetime.now(timezone.utc)
    if "updated_at" not in kwargs:
        target.updated_at = datetime.now(timezone.utc)
