"""
BlockRadar client — deposit address creation for wallet assignment.

Only the one call the provisioner needs: ``POST /wallets/{id}/addresses``.
"""

import logging
from dataclasses import dataclass

import httpx

from app.config import settings
from app.core.exceptions import UpstreamUnavailable, ValidationRejected
from app.providers.base import send_json

logger = logging.getLogger(__name__)


@dataclass
class CreatedAddress:
    address: str
    resource_id: str


class BlockRadarClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        wallet_id: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.BLOCKRADAR_BASE_URL
        self.api_key = api_key if api_key is not None else settings.BLOCKRADAR_API_KEY
        self.wallet_id = wallet_id if wallet_id is not None else settings.BLOCKRADAR_WALLET_ID
        self.timeout = timeout or settings.PROVIDER_HTTP_TIMEOUT_SECONDS
        self._transport = transport

    async def create_address(self, name: str, metadata: dict | None = None) -> CreatedAddress:
        """Create a fresh deposit address; the address comes back lowercased."""
        if not self.api_key or not self.wallet_id:
            raise ValidationRejected("BlockRadar is not configured")

        result = await send_json(
            "blockradar",
            self.base_url,
            "POST",
            f"/wallets/{self.wallet_id}/addresses",
            headers={"Content-Type": "application/json", "x-api-key": self.api_key},
            timeout=self.timeout,
            transport=self._transport,
            json={
                "metadata": metadata or {},
                "name": name,
                "disableAutoSweep": False,
                "enableGaslessWithdraw": False,
            },
        )
        data = result.get("data") or {}
        address = data.get("address")
        resource_id = data.get("id")
        if not address or not resource_id:
            raise UpstreamUnavailable("BlockRadar address response is missing address or id")

        logger.info("BlockRadar address created: %s (%s)", resource_id, name)
        return CreatedAddress(address=address.lower(), resource_id=str(resource_id))
