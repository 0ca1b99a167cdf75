"""
PayCrest sender API adapter.

PayCrest hands back a deposit address; the user sends USDC there and the
order moves through ``payment_order.*`` states. Status lookups are a
plain ``GET /sender/orders/{id}``. Webhooks carry an HMAC-SHA256 hex
digest of the raw body keyed with the client secret.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.config import settings
from app.core.exceptions import UpstreamUnavailable, ValidationRejected
from app.models.order import LocalCurrency, OrderStatus, Provider
from app.providers.base import (
    CreatedOrder,
    HttpProviderAdapter,
    OffRampRequest,
    StatusSnapshot,
    WebhookEvent,
)
from app.schemas.destination import (
    BankDestination,
    PaybillDestination,
    PhoneDestination,
    TillDestination,
)

logger = logging.getLogger(__name__)

# M-Pesa institution code; tills ride the same network.
MPESA_INSTITUTION = "SAFAKEPC"

_CANONICAL = {
    "initiated": OrderStatus.INITIATED,
    "pending": OrderStatus.PENDING,
    "processing": OrderStatus.PENDING,
    "validated": OrderStatus.VALIDATED,
    "fulfilled": OrderStatus.VALIDATED,
    "settled": OrderStatus.SETTLED,
    "refunded": OrderStatus.REFUNDED,
    "expired": OrderStatus.EXPIRED,
    "failed": OrderStatus.FAILED,
    "cancelled": OrderStatus.CANCELLED,
}

PAYCREST_STATUS_MAP: dict[str, OrderStatus] = {
    **_CANONICAL,
    **{f"payment_order.{name}": status for name, status in _CANONICAL.items()},
    **{f"order.{name}": status for name, status in _CANONICAL.items()},
}


class _WebhookOrder(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., min_length=1)
    status: str | None = None
    tx_hash: str | None = Field(None, alias="txHash")
    updated_at: datetime | None = Field(None, alias="updatedAt")


class _WebhookBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str = Field(..., min_length=1)
    data: _WebhookOrder


class PaycrestAdapter(HttpProviderAdapter):
    provider = Provider.PAYCREST
    supports_push_updates = False
    signature_header = "X-Paycrest-Signature"
    status_map = PAYCREST_STATUS_MAP

    def __init__(self, transport=None, **overrides):
        super().__init__(
            base_url=overrides.get("base_url", settings.PAYCREST_BASE_URL),
            api_key=overrides.get("api_key", settings.PAYCREST_API_KEY),
            webhook_secret=overrides.get("webhook_secret", settings.PAYCREST_CLIENT_SECRET),
            timeout=overrides.get("timeout"),
            transport=transport,
        )
        self.network = overrides.get("network", settings.PAYCREST_NETWORK)
        self.token = overrides.get("token", settings.PAYCREST_TOKEN)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "API-Key": self.api_key}

    # --- webhooks ---

    def parse_webhook(self, payload: dict) -> WebhookEvent:
        try:
            body = _WebhookBody.model_validate(payload)
        except ValidationError as exc:
            raise ValidationRejected(f"Unrecognized PayCrest webhook: {exc.error_count()} errors") from exc

        # The event name is authoritative; a bare data.status is the fallback.
        raw_status = body.event
        if self.normalize(raw_status) == OrderStatus.UNKNOWN and body.data.status:
            raw_status = body.data.status

        return WebhookEvent(
            provider_order_id=body.data.id,
            raw_status=raw_status,
            event_id=None,
            receipt_id=body.data.tx_hash,
            observed_at=body.data.updated_at,
            payload=payload,
        )

    # --- outbound ---

    def _recipient(self, request: OffRampRequest) -> dict:
        dest = request.destination
        if isinstance(dest, PhoneDestination):
            if request.local_currency == LocalCurrency.KES:
                institution = MPESA_INSTITUTION
            elif dest.mobile_network:
                institution = dest.mobile_network
            else:
                raise ValidationRejected(
                    f"mobile_network is required for {request.local_currency.value} phone payouts",
                )
            identifier = dest.phone_number
        elif isinstance(dest, TillDestination):
            institution, identifier = MPESA_INSTITUTION, dest.till_number
        elif isinstance(dest, BankDestination):
            institution, identifier = dest.bank_code, dest.account_number
        elif isinstance(dest, PaybillDestination):
            raise ValidationRejected("PayCrest does not support paybill destinations")
        else:
            raise ValidationRejected("Unsupported destination")

        return {
            "institution": institution,
            "accountIdentifier": identifier,
            "accountName": request.account_name,
            "memo": f"Payment from Minisend to {request.account_name}",
            "metadata": {},
            "currency": request.local_currency.value,
        }

    async def create_order(self, request: OffRampRequest) -> CreatedOrder:
        if not request.return_address:
            raise ValidationRejected("return_address is required for PayCrest orders")

        body = {
            "amount": float(request.source_amount),
            "token": self.token,
            "rate": float(request.exchange_rate),
            "network": self.network,
            "recipient": self._recipient(request),
            "reference": request.reference,
            "returnAddress": request.return_address,
        }
        result = await self._request("POST", "/sender/orders", json=body)
        data = result.get("data") or result

        order_id = data.get("id")
        if not order_id:
            raise UpstreamUnavailable("PayCrest order response is missing an id")

        fees = None
        try:
            fees = Decimal(str(data.get("senderFee") or 0)) + Decimal(str(data.get("transactionFee") or 0))
        except InvalidOperation:
            logger.warning("PayCrest returned unparseable fees for %s", order_id)

        expires_at = None
        if data.get("validUntil"):
            try:
                expires_at = datetime.fromisoformat(data["validUntil"].replace("Z", "+00:00"))
            except ValueError:
                logger.warning("PayCrest returned unparseable validUntil for %s", order_id)

        logger.info("PayCrest order created: %s (ref=%s)", order_id, request.reference)
        return CreatedOrder(
            provider_order_id=order_id,
            raw_status=data.get("status") or "initiated",
            receive_address=data.get("receiveAddress"),
            expires_at=expires_at,
            fees=fees,
        )

    async def fetch_status(self, provider_order_id: str, currency=None) -> StatusSnapshot:
        result = await self._request("GET", f"/sender/orders/{provider_order_id}")
        data = result.get("data") or result
        raw_status = data.get("status")
        if not isinstance(raw_status, str):
            raise UpstreamUnavailable(f"PayCrest status response for {provider_order_id} has no status")
        return StatusSnapshot(
            raw_status=raw_status,
            receipt_id=data.get("txHash"),
            transaction_hash=data.get("txHash"),
        )

    async def fetch_rate(self, currency: LocalCurrency, amount: Decimal = Decimal("1")) -> Decimal:
        result = await self._request(
            "GET",
            f"/rates/{self.token}/{amount}/{currency.value}",
            params={"network": self.network},
        )
        try:
            rate = Decimal(str(result["data"]))
        except (KeyError, InvalidOperation) as exc:
            raise UpstreamUnavailable("Invalid rate response from PayCrest") from exc
        if rate <= 0:
            raise UpstreamUnavailable(f"PayCrest returned a non-positive rate: {rate}")
        return rate
