"""
Pydantic schemas for off-ramp orders, polling and status checks.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.order import LocalCurrency, OrderStatus, Provider
from app.schemas.destination import Destination


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class OrderCreateRequest(BaseModel):
    """Schema for creating a USDC -> local currency off-ramp order."""
    provider: Provider = Field(..., examples=["paycrest"])
    source_amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=6, examples=[25])
    local_currency: LocalCurrency = Field(..., examples=["KES"])
    destination: Destination
    account_name: str = Field(..., min_length=1, max_length=200, examples=["Jane Wanjiku"])
    return_address: str | None = Field(
        None, pattern=r"^0x[0-9a-fA-F]{40}$",
        examples=["0x8005ee53e57ab11e11eaa4efe07ee3835dc02f98"],
    )
    transaction_hash: str | None = Field(None, pattern=r"^0x[0-9a-fA-F]{64}$")
    exchange_rate: Decimal | None = Field(
        None, gt=0, description="Local units per USDC; fetched from the provider when omitted",
    )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class OrderResponse(BaseModel):
    """Order as stored; the destination itself is never echoed back."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: Provider
    provider_order_id: str
    source_amount: Decimal
    local_amount: Decimal
    local_currency: LocalCurrency
    fee_amount: Decimal
    fee_rate: Decimal
    exchange_rate: Decimal | None
    destination_kind: str
    destination_hint: str | None
    account_name: str | None
    receive_address: str | None
    expires_at: datetime | None
    canonical_status: OrderStatus
    provider_raw_status: str | None
    is_settled: bool
    settlement_receipt_id: str | None
    transaction_hash: str | None
    poll_attempt_count: int
    last_polled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


class PollRequest(BaseModel):
    """Polling overrides; durations are milliseconds."""
    model_config = ConfigDict(populate_by_name=True)

    max_attempts: int | None = Field(None, alias="maxAttempts", ge=1, le=100)
    base_delay: int | None = Field(None, alias="baseDelay", ge=0, le=300_000)
    timeout_ms: int | None = Field(None, alias="timeoutMs", gt=0, le=3_600_000)
    growth_factor: float | None = Field(None, alias="growthFactor", ge=1, le=10)
    cap_delay: int | None = Field(None, alias="capDelay", ge=0, le=600_000)


class PollResponse(BaseModel):
    success: bool
    completed: bool
    settled: bool
    outcome: str
    attempts: int
    order: OrderResponse | None = None
    message: str


class PollCancelResponse(BaseModel):
    order_id: UUID
    cancelled: bool


class StatusCheckResponse(BaseModel):
    order_id: UUID
    provider_order_id: str
    raw_status: str
    observed_status: str
    canonical_status: OrderStatus
    applied: bool
    reason: str
    is_settled: bool
