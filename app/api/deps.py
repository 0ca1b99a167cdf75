"""
Reusable FastAPI dependencies wiring the settlement core together.

Dependencies:
  - get_provider_registry  — adapters by provider name
  - get_order_store        — SQL-backed Order/StatusEvent store
  - get_wallet_store       — SQL-backed wallet assignment store
  - get_reconciler         — the single status-transition authority
  - get_webhook_ingestor   — webhook verify/parse/forward
  - get_polling_engine     — app-wide engine so jobs outlive a request
  - get_provisioner        — deposit-address assignment

Tests swap any of these through ``app.dependency_overrides``.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_session_factory
from app.providers.registry import ProviderRegistry, get_registry
from app.redis_client import get_redis
from app.settlement.order_store import OrderStore, SqlOrderStore
from app.settlement.poller import PollingEngine
from app.settlement.provisioner import WalletProvisioner
from app.settlement.reconciler import Reconciler
from app.settlement.wallet_store import SqlWalletStore, WalletStore
from app.settlement.webhook_ingestor import WebhookIngestor


def get_provider_registry() -> ProviderRegistry:
    return get_registry()


def get_order_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> OrderStore:
    return SqlOrderStore(session_factory)


def get_wallet_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> WalletStore:
    return SqlWalletStore(session_factory)


def get_reconciler(
    store: OrderStore = Depends(get_order_store),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> Reconciler:
    return Reconciler(store, registry)


def get_webhook_ingestor(
    store: OrderStore = Depends(get_order_store),
    reconciler: Reconciler = Depends(get_reconciler),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> WebhookIngestor:
    return WebhookIngestor(store, reconciler, registry)


def get_polling_engine(
    request: Request,
    store: OrderStore = Depends(get_order_store),
    reconciler: Reconciler = Depends(get_reconciler),
    registry: ProviderRegistry = Depends(get_provider_registry),
    redis=Depends(get_redis),
) -> PollingEngine:
    """One engine per app; created on first use and shut down with the app."""
    engine = getattr(request.app.state, "polling_engine", None)
    if engine is None:
        engine = PollingEngine(store, reconciler, registry, redis=redis)
        request.app.state.polling_engine = engine
    return engine


def get_provisioner(store: WalletStore = Depends(get_wallet_store)) -> WalletProvisioner:
    return WalletProvisioner(store)
