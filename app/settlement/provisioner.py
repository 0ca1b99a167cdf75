"""
Resource Provisioner — assign each (user, platform) one deposit address.

    1. upsert the row without touching the address
    2. fast path: an address is already there -> return it
    3. create a fresh address upstream (no locks held)
    4. conditional claim WHERE assigned_address IS NULL
    5. lost the claim -> drop our address, return the winner's

Any number of concurrent callers end up with the same address.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from app.core.exceptions import OfframpError
from app.models.wallet_assignment import Platform
from app.providers.blockradar import BlockRadarClient, CreatedAddress
from app.settlement.wallet_store import WalletStore

logger = logging.getLogger(__name__)

CreateFn = Callable[[], Awaitable[CreatedAddress]]


@dataclass
class Assignment:
    address: str
    resource_id: str | None
    existing: bool


class WalletProvisioner:
    def __init__(self, store: WalletStore, client: BlockRadarClient | None = None):
        self.store = store
        self.client = client or BlockRadarClient()

    def _default_create_fn(self, user_id: str, platform: Platform) -> CreateFn:
        async def create() -> CreatedAddress:
            return await self.client.create_address(
                name=f"minisend-{platform.value}-{user_id}",
                metadata={"userId": user_id, "platform": platform.value},
            )
        return create

    async def assign(
        self, user_id: str, platform: Platform, create_fn: CreateFn | None = None,
    ) -> Assignment:
        create_fn = create_fn or self._default_create_fn(user_id, platform)

        await self.store.ensure_row(user_id, platform)

        row = await self.store.get(user_id, platform)
        if row is not None and row.assigned_address:
            return Assignment(row.assigned_address, row.external_provider_resource_id, existing=True)

        created = await create_fn()
        address = created.address.lower()

        if await self.store.claim_address(user_id, platform, address, created.resource_id):
            logger.info("Assigned %s to %s/%s", address, user_id, platform.value)
            return Assignment(address, created.resource_id, existing=False)

        winner = await self.store.get(user_id, platform)
        if winner is None or not winner.assigned_address:
            raise OfframpError(f"Wallet assignment for {user_id}/{platform.value} vanished")
        logger.info(
            "Lost assignment race for %s/%s; discarding %s (%s)",
            user_id, platform.value, address, created.resource_id,
        )
        return Assignment(winner.assigned_address, winner.external_provider_resource_id, existing=True)
