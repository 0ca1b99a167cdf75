"""
Shared test fixtures for the settlement core.

Provides in-memory test doubles of the store protocols, a scripted
provider adapter, a virtual clock for the polling engine, and an async
test client with the FastAPI dependencies overridden.
"""

import asyncio
import hashlib
import hmac
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient

from app.api.deps import (
    get_order_store,
    get_polling_engine,
    get_provider_registry,
    get_wallet_store,
)
from app.core.crypto import configure_fernet
from app.models.order import LocalCurrency, Order, OrderStatus, Provider
from app.models.status_event import REPLAYABLE_REASONS
from app.models.wallet_assignment import WalletAssignment
from app.providers.base import CreatedOrder, ProviderAdapter, StatusSnapshot
from app.providers.paycrest import PAYCREST_STATUS_MAP, PaycrestAdapter
from app.providers.pretium import PRETIUM_STATUS_MAP, PretiumAdapter
from app.providers.registry import ProviderRegistry
from app.redis_client import get_redis
from app.schemas.destination import PhoneDestination
from app.settlement.poller import PollingEngine
from app.settlement.reconciler import Reconciler
from app.settlement.state_machine import TERMINAL_STATES

WEBHOOK_SECRET = "test-webhook-secret"


# --- Fernet Key Fixture ---


@pytest.fixture(scope="session")
def test_fernet_key():
    """Generate a Fernet key for tests."""
    return Fernet.generate_key()


@pytest.fixture(autouse=True)
def setup_fernet(test_fernet_key):
    """Encrypt destinations with the test Fernet key."""
    configure_fernet(test_fernet_key)


# --- In-memory stores ---


class FakeOrderStore:
    """
    In-memory OrderStore. Every method yields to the event loop first so
    concurrent callers interleave; ``commit_transition`` then compares and
    sets without yielding, which makes it atomic on a single loop.
    """

    def __init__(self):
        self.orders: dict[uuid.UUID, Order] = {}
        self.events: list = []
        self.cas_failures = 0

    async def create_order(self, order):
        await asyncio.sleep(0)
        self.orders[order.id] = order
        return order

    async def get_order(self, order_id):
        await asyncio.sleep(0)
        return self.orders.get(order_id)

    async def get_order_by_provider_id(self, provider, provider_order_id):
        await asyncio.sleep(0)
        for order in self.orders.values():
            if order.provider == provider and order.provider_order_id == provider_order_id:
                return order
        return None

    async def commit_transition(
        self, order_id, expected_status, new_status, *, raw_status, completed_at, receipt_id, event,
    ):
        await asyncio.sleep(0)
        order = self.orders.get(order_id)
        if order is None or order.canonical_status != expected_status:
            self.cas_failures += 1
            return None
        order.canonical_status = new_status
        order.provider_raw_status = raw_status
        order.updated_at = datetime.now(timezone.utc)
        if completed_at is not None:
            order.completed_at = completed_at
        if receipt_id:
            order.settlement_receipt_id = receipt_id
        self.events.append(event)
        return order

    async def append_event(self, event):
        await asyncio.sleep(0)
        self.events.append(event)
        return event

    async def record_poll_attempt(self, order_id, polled_at):
        order = self.orders.get(order_id)
        if order is not None:
            order.poll_attempt_count += 1
            order.last_polled_at = polled_at

    async def has_applied_event(self, dedupe_key):
        await asyncio.sleep(0)
        return any(e.dedupe_key == dedupe_key and e.applied for e in self.events)

    async def get_event(self, event_id):
        await asyncio.sleep(0)
        return next((e for e in self.events if e.id == event_id), None)

    async def list_events(self, order_id=None, failed_only=False, limit=100):
        events = [e for e in self.events if order_id is None or e.order_id == order_id]
        if failed_only:
            events = [e for e in events if not e.applied and e.reason in REPLAYABLE_REASONS]
        return list(reversed(events))[:limit]

    async def list_replayable_events(self, created_after, limit=100):
        replayed = {e.replay_of for e in self.events if e.replay_of}
        return [
            e for e in self.events
            if e.is_replayable and e.created_at >= created_after and e.id not in replayed
        ][:limit]

    async def list_open_orders(self, providers, polled_before, limit=100):
        providers = set(providers)
        return [
            o for o in self.orders.values()
            if o.provider in providers
            and o.canonical_status not in TERMINAL_STATES
            and (o.last_polled_at is None or o.last_polled_at < polled_before)
        ][:limit]

    # --- test helpers ---

    def events_for(self, order_id):
        return [e for e in self.events if e.order_id == order_id]


class FakeWalletStore:
    """In-memory WalletStore with the same conditional-claim semantics."""

    def __init__(self):
        self.rows: dict[tuple, WalletAssignment] = {}

    async def ensure_row(self, user_id, platform):
        await asyncio.sleep(0)
        self.rows.setdefault((user_id, platform), WalletAssignment(user_id=user_id, platform=platform))

    async def get(self, user_id, platform):
        await asyncio.sleep(0)
        return self.rows.get((user_id, platform))

    async def claim_address(self, user_id, platform, address, resource_id):
        await asyncio.sleep(0)
        row = self.rows.get((user_id, platform))
        if row is None or row.assigned_address is not None:
            return False
        row.assigned_address = address
        row.external_provider_resource_id = resource_id
        return True


@pytest.fixture
def order_store():
    return FakeOrderStore()


@pytest.fixture
def wallet_store():
    return FakeWalletStore()


# --- Provider adapters ---


class ScriptedAdapter(ProviderAdapter):
    """
    Adapter whose ``fetch_status`` replays a script. Each entry is a raw
    status string or an exception instance to raise; the last entry
    repeats once the script runs out.
    """

    def __init__(self, provider=Provider.PAYCREST, script=None, push=False):
        self.provider = provider
        self.supports_push_updates = push
        self.status_map = PRETIUM_STATUS_MAP if provider == Provider.PRETIUM else PAYCREST_STATUS_MAP
        self.script = list(script or ["pending"])
        self.calls = 0
        self.created: list = []

    def parse_webhook(self, payload):
        raise NotImplementedError

    async def create_order(self, request):
        self.created.append(request)
        return CreatedOrder(provider_order_id=f"upstream-{len(self.created)}", raw_status="initiated")

    async def fetch_rate(self, currency, amount=Decimal("1")):
        return Decimal("129.50")

    async def fetch_status(self, provider_order_id, currency=None):
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step()
        return StatusSnapshot(raw_status=step)


@pytest.fixture
def make_adapter():
    """Factory fixture for scripted adapters."""
    return ScriptedAdapter


@pytest.fixture
def paycrest_adapter():
    return PaycrestAdapter(webhook_secret=WEBHOOK_SECRET, api_key="test-key")


@pytest.fixture
def pretium_adapter():
    return PretiumAdapter(webhook_secret=WEBHOOK_SECRET, api_key="test-key")


@pytest.fixture
def registry(paycrest_adapter, pretium_adapter):
    return ProviderRegistry([paycrest_adapter, pretium_adapter])


@pytest.fixture
def reconciler(order_store, registry):
    return Reconciler(order_store, registry)


# --- Virtual clock ---


class VirtualClock:
    """Monotonic clock that only moves when the poller sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def make_engine(order_store, clock):
    """Factory for a PollingEngine over the fake store and virtual clock."""
    def _make(registry, redis=None):
        reconciler = Reconciler(order_store, registry)
        return PollingEngine(
            order_store, reconciler, registry, redis=redis, clock=clock, sleep=clock.sleep,
        )
    return _make


@pytest.fixture
def polling_engine(make_engine, registry):
    return make_engine(registry)


# --- Orders ---


def _make_order(**overrides) -> Order:
    """Create an Order with test defaults via the normal constructor."""
    destination = overrides.pop("destination", PhoneDestination(phone_number="254712345678"))
    defaults = {
        "provider": Provider.PAYCREST,
        "provider_order_id": f"pc-{uuid.uuid4().hex[:12]}",
        "source_amount": Decimal("10"),
        "local_amount": Decimal("1282"),
        "local_currency": LocalCurrency.KES,
        "fee_amount": Decimal("13"),
        "fee_rate": Decimal("0.01"),
        "exchange_rate": Decimal("129.50"),
        "account_name": "Jane Wanjiku",
        "canonical_status": OrderStatus.INITIATED,
    }
    defaults.update(overrides)
    order = Order(**defaults)
    order.set_destination(destination)
    return order


@pytest.fixture
def make_order():
    """Factory fixture for creating Order instances."""
    return _make_order


@pytest_asyncio.fixture
async def stored_order(order_store):
    """A PayCrest order in INITIATED, already in the fake store."""
    return await order_store.create_order(_make_order())


# --- Mock Redis ---


@pytest.fixture
def mock_redis():
    """AsyncMock Redis client whose poll lock is always free."""
    redis = AsyncMock()
    lock = AsyncMock()
    lock.acquire = AsyncMock(return_value=True)
    lock.release = AsyncMock()
    redis.lock = lambda *args, **kwargs: lock
    redis.poll_lock = lock
    return redis


# --- Dependency Override Helpers ---


@pytest_asyncio.fixture
async def client(order_store, wallet_store, registry, polling_engine, mock_redis):
    """
    Async HTTP test client with the stores, registry, polling engine and
    Redis overridden to use test doubles.
    """
    from app.main import app

    app.dependency_overrides[get_order_store] = lambda: order_store
    app.dependency_overrides[get_wallet_store] = lambda: wallet_store
    app.dependency_overrides[get_provider_registry] = lambda: registry
    app.dependency_overrides[get_polling_engine] = lambda: polling_engine
    app.dependency_overrides[get_redis] = lambda: mock_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await polling_engine.shutdown()
    app.dependency_overrides.clear()


# --- Webhook signing ---


@pytest.fixture
def sign():
    """Sign a raw body the way providers do (hex HMAC-SHA256)."""
    def _sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return _sign
