"""SQLAlchemy ORM models for the Minisend settlement core."""

from app.models.order import LocalCurrency, Order, OrderStatus, Provider
from app.models.status_event import EventReason, EventSource, StatusEvent
from app.models.wallet_assignment import Platform, WalletAssignment

__all__ = [
    "Order", "OrderStatus", "Provider", "LocalCurrency",
    "StatusEvent", "EventSource", "EventReason",
    "WalletAssignment", "Platform",
]
