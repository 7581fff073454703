"""
Storage Ports

Domain records and the repository interfaces every engine is constructed
with. Each ``*_atomic`` method is a single indivisible step in the backing
store: either all of its row changes land or none do.

Backends:
- MemoryRepository: single-process, used by tests and local development
- SqlRepository: SQLAlchemy async (PostgreSQL / SQLite)
- RedisWebhookEventStore: webhook dedup records only
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
import uuid


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from SQL."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# ENUMERATIONS
# =============================================================================

class PaymentStatus(str, Enum):
    """Payment status enumeration"""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    """Order status enumeration"""
    CREATED = "created"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class InventoryState(str, Enum):
    """What an order's lines currently do to the ledger"""
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"
    COMMIT_FAILED = "commit_failed"


class WebhookStatus(str, Enum):
    PROCESSING = "processing"
    PROCESSED = "processed"


class ChangeOutcome(str, Enum):
    """Result of a guarded cart/ledger write"""
    APPLIED = "applied"
    INSUFFICIENT_STOCK = "insufficient_stock"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class FinalizeOutcome(str, Enum):
    """Result of an order-level commit, release or refund"""
    APPLIED = "applied"
    NOOP = "noop"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"


# Orders in these states still hold their reservation
HOLDING_STATES = (InventoryState.HELD, InventoryState.COMMIT_FAILED)

# Quantities live in 32-bit INTEGER columns
MAX_QUANTITY = 2**31 - 1


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class InventoryRecord:
    """Per-variant stock ledger row"""
    variant_id: str
    stock_qty: int
    reserved_qty: int = 0
    version: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def available_qty(self) -> int:
        return self.stock_qty - self.reserved_qty


@dataclass
class CatalogVariant:
    variant_id: str
    sku: str
    name: str
    unit_price: Decimal
    active: bool = True


@dataclass
class Address:
    address_id: str
    user_id: str
    line1: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = "IN"


@dataclass
class CartItem:
    """A cart line; holds exactly ``quantity`` units of reservation."""
    item_id: str
    cart_id: str
    variant_id: str
    sku: str
    quantity: int
    unit_price: Decimal
    version: int = 0
    reserved_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class Cart:
    cart_id: str
    user_id: str
    items: List[CartItem] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))


@dataclass
class OrderItem:
    variant_id: str
    sku: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass
class Order:
    """Order snapshot taken from a cart at checkout"""
    order_id: str
    order_number: str
    user_id: str
    items: List[OrderItem]
    shipping_address_id: str
    billing_address_id: str
    payment_method: str
    subtotal: Decimal
    grand_total: Decimal
    currency: str = "INR"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    order_status: OrderStatus = OrderStatus.CREATED
    inventory_state: InventoryState = InventoryState.HELD
    payment_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def holds_inventory(self) -> bool:
        return self.inventory_state in HOLDING_STATES


@dataclass
class WebhookEvent:
    """Dedup record for one provider event id"""
    provider: str
    event_id: str
    event_type: str
    payload_hash: str
    status: WebhookStatus = WebhookStatus.PROCESSING
    result: Optional[Dict[str, Any]] = None
    received_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None


@dataclass
class ReservationSnapshot:
    """Cart item identity pinned by checkout; must be unchanged at commit time."""
    item_id: str
    version: int


# =============================================================================
# PORTS
# =============================================================================

class InventoryStore(ABC):
    """Ledger counters. All writes are guarded single steps keyed by variant."""

    @abstractmethod
    async def get_inventory(self, variant_id: str) -> Optional[InventoryRecord]:
        ...

    @abstractmethod
    async def set_stock(self, variant_id: str, stock_qty: int) -> InventoryRecord:
        """Create or restock a ledger row; raises InvariantViolation below reserved."""
        ...

    @abstractmethod
    async def reserve_atomic(self, variant_id: str, quantity: int) -> Tuple[ChangeOutcome, Optional[InventoryRecord]]:
        """reserved_qty += quantity only if stock_qty - reserved_qty >= quantity."""
        ...

    @abstractmethod
    async def release_atomic(self, variant_id: str, quantity: int) -> Tuple[ChangeOutcome, Optional[InventoryRecord]]:
        """reserved_qty -= quantity, floored so the counter never goes negative."""
        ...

    @abstractmethod
    async def commit_order_atomic(self, order_id: str, payment_reference: Optional[str]) -> Tuple[FinalizeOutcome, Optional[Order]]:
        """Held order -> paid/committed with stock and reserved decremented per line."""
        ...

    @abstractmethod
    async def release_order_atomic(
        self,
        order_id: str,
        payment_status: PaymentStatus,
        reason: str,
    ) -> Tuple[FinalizeOutcome, Optional[Order]]:
        """Held order -> cancelled/released with reserved decremented per line.

        Orders flagged commit_failed were paid and are REJECTED here.
        """
        ...


class CartStore(ABC):
    """Cart lines. Item writes move the ledger in the same step."""

    @abstractmethod
    async def get_or_create_cart(self, user_id: str) -> Cart:
        ...

    @abstractmethod
    async def get_cart_item(self, item_id: str) -> Optional[CartItem]:
        ...

    @abstractmethod
    async def find_cart_item(self, cart_id: str, variant_id: str) -> Optional[CartItem]:
        ...

    @abstractmethod
    async def insert_cart_item_atomic(self, item: CartItem) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        """Reserve item.quantity and insert; CONFLICT if the variant is already in the cart."""
        ...

    @abstractmethod
    async def resize_cart_item_atomic(
        self,
        item_id: str,
        expected_version: int,
        quantity: int,
        unit_price: Decimal,
        expires_at: datetime,
    ) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        """Move the item to ``quantity``, reserving or releasing the delta."""
        ...

    @abstractmethod
    async def remove_cart_item_atomic(self, item_id: str, expected_version: int) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        """Delete the item and release its hold."""
        ...

    @abstractmethod
    async def list_expired_cart_items(self, now: datetime, limit: int) -> List[CartItem]:
        ...


class OrderStore(ABC):

    @abstractmethod
    async def next_order_sequence(self, start: int) -> int:
        """Atomically allocate the next order number sequence value."""
        ...

    @abstractmethod
    async def create_order_atomic(self, order: Order, snapshot: Sequence[ReservationSnapshot]) -> Order:
        """
        Insert the order and delete the snapshotted cart items in one step.

        Raises ConcurrentModification if any snapshotted item changed and
        OrderNumberTaken if the order number is already used.
        """
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def transition_order(
        self,
        order_id: str,
        expected_version: int,
        order_status: OrderStatus,
    ) -> Optional[Order]:
        """Compare-and-swap the fulfilment status; None when the version moved."""
        ...

    @abstractmethod
    async def mark_refunded(self, order_id: str) -> Tuple[FinalizeOutcome, Optional[Order]]:
        ...

    @abstractmethod
    async def mark_commit_failed(self, order_id: str, reason: str, payment_reference: Optional[str]) -> Optional[Order]:
        """Flag a paid order whose ledger commit could not be applied; it keeps its hold."""
        ...

    @abstractmethod
    async def list_stale_orders(self, created_before: datetime, exempt_methods: Sequence[str], limit: int) -> List[Order]:
        """Unpaid orders still holding inventory, created before the cutoff."""
        ...

    @abstractmethod
    async def list_commit_failed_orders(self, limit: int) -> List[Order]:
        ...


class WebhookEventStore(ABC):

    @abstractmethod
    async def insert_if_absent(self, event: WebhookEvent) -> Tuple[bool, WebhookEvent]:
        """
        Claim an event id.

        Returns:
            (True, event) when this caller inserted the record,
            (False, existing) when the id was already claimed
        """
        ...

    @abstractmethod
    async def mark_processed(self, provider: str, event_id: str, result: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def discard(self, provider: str, event_id: str) -> None:
        """Drop a claim so a redelivery can process the event."""
        ...

    @abstractmethod
    async def purge_before(self, cutoff: datetime) -> int:
        ...


class AddressBook(ABC):

    @abstractmethod
    async def owns(self, user_id: str, address_id: str) -> bool:
        ...


class Catalog(ABC):

    @abstractmethod
    async def get_variant(self, variant_id: str) -> Optional[CatalogVariant]:
        ...


class Repository(InventoryStore, CartStore, OrderStore, WebhookEventStore, AddressBook, Catalog):
    """A backend that serves every port from one store."""

    async def close(self) -> None:
        return None
