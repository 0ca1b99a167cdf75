"""
Settlement components for Celery workers.

Each task runs on its own event loop, so it gets its own database engine
and Redis client, disposed when the task finishes.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.config import settings
from app.providers.registry import ProviderRegistry, get_registry
from app.redis_client import redis_url
from app.settlement.order_store import SqlOrderStore
from app.settlement.poller import PollingEngine
from app.settlement.reconciler import Reconciler
from app.settlement.webhook_ingestor import WebhookIngestor


@dataclass
class SettlementRuntime:
    store: SqlOrderStore
    registry: ProviderRegistry
    reconciler: Reconciler
    poller: PollingEngine
    ingestor: WebhookIngestor


@asynccontextmanager
async def settlement_runtime():
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    redis = aioredis.from_url(redis_url(), decode_responses=True)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    store = SqlOrderStore(session_factory)
    registry = get_registry()
    reconciler = Reconciler(store, registry)
    runtime = SettlementRuntime(
        store=store,
        registry=registry,
        reconciler=reconciler,
        poller=PollingEngine(store, reconciler, registry, redis=redis),
        ingestor=WebhookIngestor(store, reconciler, registry),
    )
    try:
        yield runtime
    finally:
        await runtime.poller.shutdown()
        await redis.aclose()
        await engine.dispose()
