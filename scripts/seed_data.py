"""
Test data seeder — populates the database with sample data for development.

Usage:
    python scripts/seed_data.py

Creates:
  - 8 orders across both providers and every stored status
  - an applied status event for each order past INITIATED
  - 3 deposit-wallet assignments

Idempotent: skips orders whose provider_order_id already exists.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from app.database import async_session
from app.models.order import LocalCurrency, Order, OrderStatus, Provider
from app.models.status_event import EventReason, EventSource, StatusEvent
from app.models.wallet_assignment import Platform, WalletAssignment
from app.schemas.destination import BankDestination, PaybillDestination, PhoneDestination, TillDestination
from app.settlement.fees import split_total

# ---------------------------------------------------------------------------
# Approximate USDC rates per local currency
# ---------------------------------------------------------------------------

RATES = {
    LocalCurrency.KES: Decimal("129.50"),
    LocalCurrency.GHS: Decimal("15.20"),
    LocalCurrency.NGN: Decimal("1545.00"),
    LocalCurrency.UGX: Decimal("3710.00"),
}

# (provider, provider_order_id, usdc, currency, destination, account name, status)
SAMPLE_ORDERS = [
    (Provider.PAYCREST, "seed-pc-001", "10", LocalCurrency.KES,
     PhoneDestination(phone_number="254712345678", mobile_network="Safaricom"), "Jane Wanjiku", OrderStatus.INITIATED),
    (Provider.PAYCREST, "seed-pc-002", "25", LocalCurrency.KES,
     TillDestination(till_number="5123456"), "Mama Mboga Stores", OrderStatus.PENDING),
    (Provider.PAYCREST, "seed-pc-003", "50", LocalCurrency.NGN,
     BankDestination(account_number="0123456789", bank_code="058", bank_name="Guaranty Trust Bank"),
     "Emeka Okafor", OrderStatus.VALIDATED),
    (Provider.PAYCREST, "seed-pc-004", "100", LocalCurrency.GHS,
     PhoneDestination(phone_number="233241234567", mobile_network="MTN"), "Kwame Mensah", OrderStatus.SETTLED),
    (Provider.PAYCREST, "seed-pc-005", "5", LocalCurrency.UGX,
     PhoneDestination(phone_number="256772123456", mobile_network="MTN"), "Okello Brian", OrderStatus.EXPIRED),
    (Provider.PRETIUM, "seed-pt-001", "15", LocalCurrency.KES,
     PaybillDestination(paybill_number="247247", account_number="0712345678"), "Achieng Otieno", OrderStatus.PENDING),
    (Provider.PRETIUM, "seed-pt-002", "40", LocalCurrency.KES,
     PhoneDestination(phone_number="254722000111", mobile_network="Safaricom"), "Peter Kamau", OrderStatus.SETTLED),
    (Provider.PRETIUM, "seed-pt-003", "8", LocalCurrency.KES,
     PhoneDestination(phone_number="254733000222", mobile_network="Airtel"), "Grace Njeri", OrderStatus.FAILED),
]

SAMPLE_WALLETS = [
    ("fid:4021", Platform.FARCASTER, "0x1f9090aae28b8a3dceadf281b0f12828e676c326"),
    ("0xa11ce000000000000000000000000000000000a1", Platform.BASEAPP, "0x4838b106fce9647bdf1e7877bf73ce8b0bad5f97"),
    ("web:guest-7", Platform.WEB, None),
]


def _build_order(provider, provider_order_id, usdc, currency, destination, account_name, status, now) -> Order:
    source_amount = Decimal(usdc)
    rate = RATES[currency]
    split = split_total(source_amount * rate)
    order = Order(
        provider=provider,
        provider_order_id=provider_order_id,
        source_amount=source_amount,
        local_amount=split.recipient_amount,
        local_currency=currency,
        fee_amount=split.fee,
        fee_rate=split.rate,
        exchange_rate=rate,
        account_name=account_name,
        canonical_status=status,
        provider_raw_status=status.value if status != OrderStatus.INITIATED else None,
        created_at=now - timedelta(hours=2),
    )
    if status == OrderStatus.SETTLED:
        order.completed_at = now - timedelta(hours=1)
        order.settlement_receipt_id = f"seed-receipt-{provider_order_id}"
    order.set_destination(destination)
    return order


# ---------------------------------------------------------------------------
# Main seed routine
# ---------------------------------------------------------------------------


async def seed() -> None:
    """Insert sample data into the database. Safe to run multiple times."""
    now = datetime.now(timezone.utc)

    async with async_session() as session:
        existing = set(
            (await session.execute(select(Order.provider_order_id))).scalars().all()
        )

        new_orders = 0
        for sample in SAMPLE_ORDERS:
            if sample[1] in existing:
                continue
            order = _build_order(*sample, now)
            session.add(order)
            await session.flush()
            if order.canonical_status != OrderStatus.INITIATED:
                session.add(StatusEvent(
                    order_id=order.id,
                    provider=order.provider,
                    provider_order_id=order.provider_order_id,
                    source=EventSource.WEBHOOK if order.provider == Provider.PRETIUM else EventSource.POLL,
                    raw_status=order.provider_raw_status,
                    canonical_status=order.canonical_status,
                    applied=True,
                    reason=EventReason.APPLIED,
                ))
            new_orders += 1
        print(f"  Orders: {new_orders} new, {len(SAMPLE_ORDERS) - new_orders} existing")

        new_wallets = 0
        for user_id, platform, address in SAMPLE_WALLETS:
            found = await session.execute(
                select(WalletAssignment).where(
                    WalletAssignment.user_id == user_id,
                    WalletAssignment.platform == platform,
                )
            )
            if found.scalar_one_or_none() is not None:
                continue
            session.add(WalletAssignment(
                user_id=user_id,
                platform=platform,
                assigned_address=address,
                external_provider_resource_id=f"seed-{platform.value}" if address else None,
            ))
            new_wallets += 1
        print(f"  Wallet assignments: {new_wallets} new")

        await session.commit()


if __name__ == "__main__":
    print("Seeding database...")
    asyncio.run(seed())
    print("Done.")
