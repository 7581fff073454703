"""
Storage Module

Ports, records and the in-memory backend. The SQL and Redis backends are
imported from their own modules so this package stays import-light.
"""
from .base import (
    Repository,
    InventoryRecord,
    Cart,
    CartItem,
    Order,
    OrderItem,
    WebhookEvent,
    PaymentStatus,
    OrderStatus,
    InventoryState,
    ChangeOutcome,
    FinalizeOutcome,
)
from .memory import MemoryRepository

__all__ = [
    "Repository",
    "InventoryRecord",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "WebhookEvent",
    "PaymentStatus",
    "OrderStatus",
    "InventoryState",
    "ChangeOutcome",
    "FinalizeOutcome",
    "MemoryRepository",
]
