"""
Provider adapter contract.

Each settlement vendor (PayCrest, Pretium, ...) gets one adapter that
translates between the vendor's wire format and the settlement core:

    create_order    submit an off-ramp order upstream
    fetch_status    one status lookup, no retries
    normalize       vendor status string -> OrderStatus (total)
    verify_signature / parse_webhook
                    authenticate and decode a push notification

Outbound HTTP goes through ``send_json``, which maps
transport and HTTP failures onto the typed error taxonomy so callers never
see httpx exceptions.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

import httpx

from app.config import settings
from app.core.exceptions import NotFound, UpstreamUnavailable, ValidationRejected
from app.core.security import verify_hmac_signature
from app.models.order import LocalCurrency, OrderStatus, Provider
from app.schemas.destination import Destination
from app.settlement.fees import FeeSplit

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass
class OffRampRequest:
    order_id: uuid.UUID
    source_amount: Decimal
    local_currency: LocalCurrency
    destination: Destination
    account_name: str
    fee_split: FeeSplit
    exchange_rate: Decimal
    return_address: str | None = None
    transaction_hash: str | None = None

    @property
    def reference(self) -> str:
        return f"minisend_{self.order_id.hex}"


@dataclass
class CreatedOrder:
    provider_order_id: str
    raw_status: str
    receive_address: str | None = None
    expires_at: datetime | None = None
    fees: Decimal | None = None


@dataclass
class StatusSnapshot:
    raw_status: str
    receipt_id: str | None = None
    transaction_hash: str | None = None


@dataclass
class WebhookEvent:
    provider_order_id: str
    raw_status: str
    event_id: str | None = None
    receipt_id: str | None = None
    observed_at: datetime | None = None
    payload: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Vendor-neutral interface the settlement core programs against."""

    provider: Provider
    supports_push_updates: bool = False
    signature_header: str = ""

    # Lower-cased vendor status -> canonical status.
    status_map: dict[str, OrderStatus] = {}

    webhook_secret: str = ""

    def normalize(self, raw_status) -> OrderStatus:
        """Map a vendor status string; anything unrecognized is UNKNOWN."""
        if not isinstance(raw_status, str):
            return OrderStatus.UNKNOWN
        return self.status_map.get(raw_status.strip().lower(), OrderStatus.UNKNOWN)

    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        return verify_hmac_signature(self.webhook_secret, payload, signature)

    @abstractmethod
    def parse_webhook(self, payload: dict) -> WebhookEvent:
        """Decode a webhook body; raises ValidationRejected on unknown shapes."""

    @abstractmethod
    async def create_order(self, request: OffRampRequest) -> CreatedOrder: ...

    @abstractmethod
    async def fetch_status(
        self, provider_order_id: str, currency: LocalCurrency | None = None,
    ) -> StatusSnapshot: ...

    @abstractmethod
    async def fetch_rate(self, currency: LocalCurrency, amount: Decimal = Decimal("1")) -> Decimal:
        """Local-currency units per stablecoin unit."""


async def send_json(
    label: str,
    base_url: str,
    method: str,
    path: str,
    *,
    headers: dict[str, str],
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
    json: dict | None = None,
    params: dict | None = None,
) -> dict:
    """
    Send one JSON request and return the decoded body.

    Timeouts, connection failures, 5xx and 429 raise UpstreamUnavailable;
    404 raises NotFound; any other 4xx raises ValidationRejected.
    """
    try:
        async with httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
        ) as client:
            resp = await client.request(method, path, json=json, params=params, headers=headers)
    except httpx.TimeoutException as exc:
        raise UpstreamUnavailable(f"{label} request timed out: {method} {path}") from exc
    except httpx.TransportError as exc:
        raise UpstreamUnavailable(f"{label} unreachable: {exc}") from exc

    if resp.status_code == 429 or resp.status_code >= 500:
        logger.warning("%s %s %s -> %s", label, method, path, resp.status_code)
        raise UpstreamUnavailable(f"{label} returned {resp.status_code}", status=resp.status_code)
    if resp.status_code == 404:
        raise NotFound(f"{label} resource not found: {path}")

    try:
        body = resp.json()
    except ValueError as exc:
        raise UpstreamUnavailable(f"{label} returned a non-JSON body") from exc

    if resp.status_code >= 400:
        message = body.get("message") if isinstance(body, dict) else None
        raise ValidationRejected(
            message or f"{label} rejected the request ({resp.status_code})",
            status=resp.status_code,
        )
    if not isinstance(body, dict):
        raise UpstreamUnavailable(f"{label} returned an unexpected body")
    return body


class HttpProviderAdapter(ProviderAdapter):
    """ProviderAdapter backed by a JSON-over-HTTPS vendor API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        webhook_secret: str = "",
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout or settings.PROVIDER_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict:
        return await send_json(
            self.provider.value,
            self.base_url,
            method,
            path,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self._transport,
            json=json,
            params=params,
        )
