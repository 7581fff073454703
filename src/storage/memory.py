"""
In-Memory Repository

Single-process backend for tests and local development. Every public
coroutine runs to completion without awaiting, so on one event loop each
call is indivisible exactly like a guarded SQL statement; no lock is taken.
Records handed out are copies, never the stored objects.
"""

import copy
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from src.common.errors import ConcurrentModification, InvariantViolation, OrderNumberTaken
from src.storage.base import (
    Address,
    Cart,
    CartItem,
    CatalogVariant,
    ChangeOutcome,
    FinalizeOutcome,
    InventoryRecord,
    InventoryState,
    Order,
    OrderStatus,
    PaymentStatus,
    Repository,
    ReservationSnapshot,
    WebhookEvent,
    WebhookStatus,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)


class MemoryRepository(Repository):
    """Dict-backed implementation of every storage port."""

    def __init__(self):
        self._inventory: Dict[str, InventoryRecord] = {}
        self._variants: Dict[str, CatalogVariant] = {}
        self._addresses: Dict[str, Address] = {}
        self._carts: Dict[str, Cart] = {}  # user_id -> cart (items kept separately)
        self._items: Dict[str, CartItem] = {}
        self._orders: Dict[str, Order] = {}
        self._order_numbers: Dict[str, str] = {}
        self._sequence: Optional[int] = None
        self._events: Dict[Tuple[str, str], WebhookEvent] = {}

    # =========================================================================
    # SEEDING
    # =========================================================================

    async def add_variant(self, variant: CatalogVariant) -> CatalogVariant:
        self._variants[variant.variant_id] = copy.deepcopy(variant)
        return variant

    async def add_address(self, address: Address) -> Address:
        self._addresses[address.address_id] = copy.deepcopy(address)
        return address

    # =========================================================================
    # COLLABORATORS
    # =========================================================================

    async def get_variant(self, variant_id: str) -> Optional[CatalogVariant]:
        variant = self._variants.get(variant_id)
        return copy.deepcopy(variant) if variant else None

    async def owns(self, user_id: str, address_id: str) -> bool:
        address = self._addresses.get(address_id)
        return address is not None and address.user_id == user_id

    # =========================================================================
    # INVENTORY
    # =========================================================================

    def _bump(self, record: InventoryRecord) -> None:
        record.version += 1
        record.updated_at = utcnow()

    def _reserve(self, variant_id: str, quantity: int) -> ChangeOutcome:
        record = self._inventory.get(variant_id)
        if record is None:
            return ChangeOutcome.NOT_FOUND
        if record.stock_qty - record.reserved_qty < quantity:
            return ChangeOutcome.INSUFFICIENT_STOCK
        record.reserved_qty += quantity
        self._bump(record)
        return ChangeOutcome.APPLIED

    def _release(self, variant_id: str, quantity: int) -> ChangeOutcome:
        record = self._inventory.get(variant_id)
        if record is None:
            return ChangeOutcome.NOT_FOUND
        if record.reserved_qty < quantity:
            logger.error(
                "reserved_underflow",
                variant_id=variant_id,
                reserved_qty=record.reserved_qty,
                quantity=quantity,
            )
        record.reserved_qty = max(record.reserved_qty - quantity, 0)
        self._bump(record)
        return ChangeOutcome.APPLIED

    async def get_inventory(self, variant_id: str) -> Optional[InventoryRecord]:
        record = self._inventory.get(variant_id)
        return copy.copy(record) if record else None

    async def set_stock(self, variant_id: str, stock_qty: int) -> InventoryRecord:
        record = self._inventory.get(variant_id)
        if record is None:
            if stock_qty < 0:
                raise InvariantViolation("stock_qty must be >= 0", variant_id=variant_id)
            record = InventoryRecord(variant_id=variant_id, stock_qty=stock_qty)
            self._inventory[variant_id] = record
            return copy.copy(record)
        if stock_qty < record.reserved_qty:
            raise InvariantViolation(
                "stock_qty cannot drop below reserved_qty",
                variant_id=variant_id,
                reserved_qty=record.reserved_qty,
            )
        record.stock_qty = stock_qty
        self._bump(record)
        return copy.copy(record)

    async def reserve_atomic(self, variant_id: str, quantity: int) -> Tuple[ChangeOutcome, Optional[InventoryRecord]]:
        outcome = self._reserve(variant_id, quantity)
        record = self._inventory.get(variant_id)
        return outcome, copy.copy(record) if record else None

    async def release_atomic(self, variant_id: str, quantity: int) -> Tuple[ChangeOutcome, Optional[InventoryRecord]]:
        outcome = self._release(variant_id, quantity)
        record = self._inventory.get(variant_id)
        return outcome, copy.copy(record) if record else None

    async def commit_order_atomic(self, order_id: str, payment_reference: Optional[str]) -> Tuple[FinalizeOutcome, Optional[Order]]:
        order = self._orders.get(order_id)
        if order is None:
            return FinalizeOutcome.NOT_FOUND, None
        if order.inventory_state == InventoryState.COMMITTED:
            return FinalizeOutcome.NOOP, copy.deepcopy(order)
        if not order.holds_inventory:
            return FinalizeOutcome.REJECTED, copy.deepcopy(order)

        # Validate every line before touching any counter
        for line in order.items:
            record = self._inventory.get(line.variant_id)
            if record is None or record.reserved_qty < line.quantity or record.stock_qty < line.quantity:
                raise InvariantViolation(
                    "held quantity missing from ledger",
                    order_id=order_id,
                    variant_id=line.variant_id,
                )
        for line in order.items:
            record = self._inventory[line.variant_id]
            record.stock_qty -= line.quantity
            record.reserved_qty -= line.quantity
            self._bump(record)

        order.payment_status = PaymentStatus.PAID
        order.inventory_state = InventoryState.COMMITTED
        order.payment_reference = payment_reference or order.payment_reference
        order.failure_reason = None
        self._touch(order)
        return FinalizeOutcome.APPLIED, copy.deepcopy(order)

    async def release_order_atomic(
        self,
        order_id: str,
        payment_status: PaymentStatus,
        reason: str,
    ) -> Tuple[FinalizeOutcome, Optional[Order]]:
        order = self._orders.get(order_id)
        if order is None:
            return FinalizeOutcome.NOT_FOUND, None
        if order.inventory_state == InventoryState.RELEASED:
            return FinalizeOutcome.NOOP, copy.deepcopy(order)
        if order.inventory_state != InventoryState.HELD:
            return FinalizeOutcome.REJECTED, copy.deepcopy(order)

        for line in order.items:
            self._release(line.variant_id, line.quantity)

        order.payment_status = payment_status
        order.order_status = OrderStatus.CANCELLED
        order.inventory_state = InventoryState.RELEASED
        order.failure_reason = reason
        self._touch(order)
        return FinalizeOutcome.APPLIED, copy.deepcopy(order)

    # =========================================================================
    # CARTS
    # =========================================================================

    def _cart_items(self, cart_id: str) -> List[CartItem]:
        items = [item for item in self._items.values() if item.cart_id == cart_id]
        return sorted(items, key=lambda item: item.reserved_at)

    def _item_for(self, cart_id: str, variant_id: str) -> Optional[CartItem]:
        for item in self._items.values():
            if item.cart_id == cart_id and item.variant_id == variant_id:
                return item
        return None

    async def get_or_create_cart(self, user_id: str) -> Cart:
        cart = self._carts.get(user_id)
        if cart is None:
            cart = Cart(cart_id=new_id(), user_id=user_id)
            self._carts[user_id] = cart
        snapshot = copy.copy(cart)
        snapshot.items = [copy.copy(item) for item in self._cart_items(cart.cart_id)]
        return snapshot

    async def get_cart_item(self, item_id: str) -> Optional[CartItem]:
        item = self._items.get(item_id)
        return copy.copy(item) if item else None

    async def find_cart_item(self, cart_id: str, variant_id: str) -> Optional[CartItem]:
        item = self._item_for(cart_id, variant_id)
        return copy.copy(item) if item else None

    async def insert_cart_item_atomic(self, item: CartItem) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        if self._item_for(item.cart_id, item.variant_id) is not None:
            return ChangeOutcome.CONFLICT, None
        outcome = self._reserve(item.variant_id, item.quantity)
        if outcome != ChangeOutcome.APPLIED:
            return outcome, None
        stored = copy.copy(item)
        self._items[stored.item_id] = stored
        return ChangeOutcome.APPLIED, copy.copy(stored)

    async def resize_cart_item_atomic(
        self,
        item_id: str,
        expected_version: int,
        quantity: int,
        unit_price: Decimal,
        expires_at: datetime,
    ) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        item = self._items.get(item_id)
        if item is None:
            return ChangeOutcome.NOT_FOUND, None
        if item.version != expected_version:
            return ChangeOutcome.CONFLICT, copy.copy(item)

        delta = quantity - item.quantity
        if delta > 0:
            outcome = self._reserve(item.variant_id, delta)
            if outcome != ChangeOutcome.APPLIED:
                return outcome, copy.copy(item)
        elif delta < 0:
            self._release(item.variant_id, -delta)

        item.quantity = quantity
        item.unit_price = unit_price
        item.expires_at = expires_at
        item.version += 1
        return ChangeOutcome.APPLIED, copy.copy(item)

    async def remove_cart_item_atomic(self, item_id: str, expected_version: int) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        item = self._items.get(item_id)
        if item is None:
            return ChangeOutcome.NOT_FOUND, None
        if item.version != expected_version:
            return ChangeOutcome.CONFLICT, copy.copy(item)
        self._release(item.variant_id, item.quantity)
        del self._items[item_id]
        return ChangeOutcome.APPLIED, item

    async def list_expired_cart_items(self, now: datetime, limit: int) -> List[CartItem]:
        expired = [
            item for item in self._items.values()
            if item.expires_at is not None and item.expires_at <= now
        ]
        expired.sort(key=lambda item: item.expires_at)
        return [copy.copy(item) for item in expired[:limit]]

    # =========================================================================
    # ORDERS
    # =========================================================================

    def _touch(self, order: Order) -> None:
        order.version += 1
        order.updated_at = utcnow()

    async def next_order_sequence(self, start: int) -> int:
        self._sequence = start if self._sequence is None else max(self._sequence + 1, start)
        return self._sequence

    async def create_order_atomic(self, order: Order, snapshot: Sequence[ReservationSnapshot]) -> Order:
        if order.order_number in self._order_numbers:
            raise OrderNumberTaken(order_number=order.order_number)
        for pinned in snapshot:
            item = self._items.get(pinned.item_id)
            if item is None or item.version != pinned.version:
                raise ConcurrentModification("cart changed during checkout", item_id=pinned.item_id)

        for pinned in snapshot:
            del self._items[pinned.item_id]
        stored = copy.deepcopy(order)
        self._orders[stored.order_id] = stored
        self._order_numbers[stored.order_number] = stored.order_id
        return copy.deepcopy(stored)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def transition_order(
        self,
        order_id: str,
        expected_version: int,
        order_status: OrderStatus,
    ) -> Optional[Order]:
        order = self._orders.get(order_id)
        if order is None or order.version != expected_version:
            return None
        order.order_status = order_status
        self._touch(order)
        return copy.deepcopy(order)

    async def mark_refunded(self, order_id: str) -> Tuple[FinalizeOutcome, Optional[Order]]:
        order = self._orders.get(order_id)
        if order is None:
            return FinalizeOutcome.NOT_FOUND, None
        if order.payment_status == PaymentStatus.REFUNDED:
            return FinalizeOutcome.NOOP, copy.deepcopy(order)
        if order.payment_status != PaymentStatus.PAID:
            return FinalizeOutcome.REJECTED, copy.deepcopy(order)
        order.payment_status = PaymentStatus.REFUNDED
        self._touch(order)
        return FinalizeOutcome.APPLIED, copy.deepcopy(order)

    async def mark_commit_failed(self, order_id: str, reason: str, payment_reference: Optional[str]) -> Optional[Order]:
        order = self._orders.get(order_id)
        if order is None or not order.holds_inventory:
            return None
        order.inventory_state = InventoryState.COMMIT_FAILED
        order.failure_reason = reason
        order.payment_reference = payment_reference or order.payment_reference
        self._touch(order)
        return copy.deepcopy(order)

    async def list_stale_orders(self, created_before: datetime, exempt_methods: Sequence[str], limit: int) -> List[Order]:
        stale = [
            order for order in self._orders.values()
            if order.payment_status == PaymentStatus.PENDING
            and order.inventory_state == InventoryState.HELD
            and order.payment_method not in exempt_methods
            and order.created_at <= created_before
        ]
        stale.sort(key=lambda order: order.created_at)
        return [copy.deepcopy(order) for order in stale[:limit]]

    async def list_commit_failed_orders(self, limit: int) -> List[Order]:
        failed = [
            order for order in self._orders.values()
            if order.inventory_state == InventoryState.COMMIT_FAILED
        ]
        failed.sort(key=lambda order: order.updated_at)
        return [copy.deepcopy(order) for order in failed[:limit]]

    # =========================================================================
    # WEBHOOK EVENTS
    # =========================================================================

    async def insert_if_absent(self, event: WebhookEvent) -> Tuple[bool, WebhookEvent]:
        key = (event.provider, event.event_id)
        existing = self._events.get(key)
        if existing is not None and (existing.expires_at is None or existing.expires_at > utcnow()):
            return False, copy.deepcopy(existing)
        self._events[key] = copy.deepcopy(event)
        return True, event

    async def mark_processed(self, provider: str, event_id: str, result: Dict[str, Any]) -> None:
        event = self._events.get((provider, event_id))
        if event is not None:
            event.status = WebhookStatus.PROCESSED
            event.result = dict(result)

    async def discard(self, provider: str, event_id: str) -> None:
        self._events.pop((provider, event_id), None)

    async def purge_before(self, cutoff: datetime) -> int:
        stale = [key for key, event in self._events.items() if event.received_at < cutoff]
        for key in stale:
            del self._events[key]
        return len(stale)
