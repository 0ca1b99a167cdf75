"""
Pretium disbursement adapter.

Pretium pays out after the user's USDC lands in our settlement address:
the disbursement request carries the on-chain transaction hash. Payout
progress arrives as webhooks on ``PRETIUM_CALLBACK_URL``; status lookups
are ``POST /v1/status/{currency}``.

Every response is wrapped as ``{code, message, data}`` and a non-200
``code`` is an error even when the HTTP status is 200.
"""

import logging
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.config import settings
from app.core.exceptions import NotFound, UpstreamUnavailable, ValidationRejected
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

SUPPORTED_CURRENCIES = {LocalCurrency.KES, LocalCurrency.GHS, LocalCurrency.NGN}

PRETIUM_STATUS_MAP: dict[str, OrderStatus] = {
    "pending": OrderStatus.PENDING,
    "processing": OrderStatus.PENDING,
    "complete": OrderStatus.SETTLED,
    "failed": OrderStatus.FAILED,
    "cancelled": OrderStatus.CANCELLED,
    "reversed": OrderStatus.REFUNDED,
}


class _WebhookBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    transaction_code: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    receipt_number: str | None = None
    public_name: str | None = None
    message: str | None = None
    is_released: bool | None = None
    transaction_hash: str | None = None


class PretiumAdapter(HttpProviderAdapter):
    provider = Provider.PRETIUM
    supports_push_updates = True
    signature_header = "X-Pretium-Signature"
    status_map = PRETIUM_STATUS_MAP

    def __init__(self, transport=None, **overrides):
        super().__init__(
            base_url=overrides.get("base_url", settings.PRETIUM_BASE_URL),
            api_key=overrides.get("api_key", settings.PRETIUM_API_KEY),
            webhook_secret=overrides.get("webhook_secret", settings.PRETIUM_WEBHOOK_SECRET),
            timeout=overrides.get("timeout"),
            transport=transport,
        )
        self.chain = overrides.get("chain", settings.PRETIUM_CHAIN)
        self.settlement_address = overrides.get(
            "settlement_address", settings.PRETIUM_SETTLEMENT_ADDRESS,
        )
        self.callback_url = overrides.get("callback_url", settings.PRETIUM_CALLBACK_URL)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-api-key": self.api_key}

    async def _request(self, method, path, *, json=None, params=None) -> dict:
        body = await super()._request(method, path, json=json, params=params)
        code = body.get("code")
        if code is not None and code != 200:
            message = body.get("message") or f"Pretium error {code}"
            if code == 404:
                raise NotFound(message)
            if isinstance(code, int) and (code == 429 or code >= 500):
                raise UpstreamUnavailable(message, status=code)
            raise ValidationRejected(message, status=code)
        return body

    # --- webhooks ---

    def parse_webhook(self, payload: dict) -> WebhookEvent:
        try:
            body = _WebhookBody.model_validate(payload)
        except ValidationError as exc:
            raise ValidationRejected(f"Unrecognized Pretium webhook: {exc.error_count()} errors") from exc

        return WebhookEvent(
            provider_order_id=body.transaction_code,
            raw_status=body.status,
            event_id=None,
            receipt_id=body.receipt_number,
            payload=payload,
        )

    # --- outbound ---

    def build_disburse_request(self, request: OffRampRequest) -> dict:
        """
        Disbursement body for one destination kind.

        NGN bank transfers carry only the recipient amount; mobile money and
        M-Pesa shortcodes carry the total with the platform fee split out.
        """
        dest = request.destination
        split = request.fee_split
        body = {
            "account_name": request.account_name,
            "chain": self.chain,
            "transaction_hash": request.transaction_hash,
            "callback_url": self.callback_url,
        }

        if isinstance(dest, BankDestination):
            if request.local_currency != LocalCurrency.NGN:
                raise ValidationRejected("Pretium bank transfers are only supported for NGN")
            body.update({
                "type": "BANK_TRANSFER",
                "account_number": dest.account_number,
                "bank_code": dest.bank_code,
                "bank_name": dest.bank_name or dest.bank_code,
                "amount": str(split.recipient_amount),
            })
            return body

        if isinstance(dest, PhoneDestination):
            if not dest.mobile_network and request.local_currency != LocalCurrency.KES:
                raise ValidationRejected("mobile_network is required outside Kenya")
            body.update({
                "type": "MOBILE",
                "shortcode": dest.phone_number,
                "mobile_network": dest.mobile_network or "Safaricom",
            })
        elif isinstance(dest, TillDestination):
            body.update({
                "type": "BUY_GOODS",
                "shortcode": dest.till_number,
                "mobile_network": "Safaricom",
            })
        elif isinstance(dest, PaybillDestination):
            body.update({
                "type": "PAYBILL",
                "shortcode": dest.paybill_number,
                "account_number": dest.account_number,
                "mobile_network": "Safaricom",
            })
        else:
            raise ValidationRejected("Unsupported destination")

        body.update({"amount": str(split.total), "fee": str(split.fee)})
        return body

    async def create_order(self, request: OffRampRequest) -> CreatedOrder:
        if request.local_currency not in SUPPORTED_CURRENCIES:
            raise ValidationRejected(f"Pretium does not pay out {request.local_currency.value}")
        if not request.transaction_hash:
            raise ValidationRejected("transaction_hash is required for Pretium disbursements")

        body = self.build_disburse_request(request)
        result = await self._request("POST", f"/v1/pay/{request.local_currency.value}", json=body)
        data = result.get("data") or {}

        code = data.get("transaction_code")
        if not code:
            raise UpstreamUnavailable("Pretium disburse response is missing transaction_code")

        logger.info("Pretium disbursement created: %s (%s)", code, body["type"])
        return CreatedOrder(
            provider_order_id=code,
            raw_status=data.get("status") or "PENDING",
            receive_address=self.settlement_address,
            fees=request.fee_split.fee,
        )

    async def fetch_status(
        self, provider_order_id: str, currency: LocalCurrency | None = None,
    ) -> StatusSnapshot:
        if currency is None:
            raise ValidationRejected("Pretium status lookups need the payout currency")
        result = await self._request(
            "POST", f"/v1/status/{currency.value}", json={"transaction_code": provider_order_id},
        )
        data = result.get("data") or {}
        raw_status = data.get("status")
        if not isinstance(raw_status, str):
            raise UpstreamUnavailable(f"Pretium status response for {provider_order_id} has no status")
        return StatusSnapshot(
            raw_status=raw_status,
            receipt_id=data.get("receipt_number") or None,
            transaction_hash=data.get("transaction_hash"),
        )

    async def fetch_rate(self, currency: LocalCurrency, amount: Decimal = Decimal("1")) -> Decimal:
        result = await self._request("POST", "/v1/exchange-rate", json={"currency_code": currency.value})
        try:
            rate = Decimal(str(result["data"]["buying_rate"]))
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise UpstreamUnavailable("Invalid exchange-rate response from Pretium") from exc
        if rate <= 0:
            raise UpstreamUnavailable(f"Pretium returned a non-positive rate: {rate}")
        return rate
