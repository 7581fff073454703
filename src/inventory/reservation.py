"""
Reservation Engine

Turns cart edits into atomic ledger reservations:
- add: reserve the requested quantity (grows an existing line by the delta)
- update: reserve a positive delta, release a negative one
- remove: release the whole line

Each change is one guarded store call; a lost compare-and-swap on the cart
line or a transient storage error is retried with backoff. Running out of
stock is a result, not an exception.
"""

import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional, Tuple

import structlog

from src.common.errors import ConcurrentModification, TransientStorageError
from src.common.metrics import RESERVATION_LATENCY, RESERVATION_OUTCOMES
from src.common.retry import RetryPolicy, retry_async
from src.storage.base import (
    CartItem,
    CartStore,
    Catalog,
    ChangeOutcome,
    InventoryStore,
    MAX_QUANTITY,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)


class ReservationStatus(str, Enum):
    ACCEPTED = "accepted"
    INSUFFICIENT_STOCK = "insufficient_stock"
    NOT_FOUND = "not_found"
    INVALID_QUANTITY = "invalid_quantity"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass
class ReservationResult:
    """Outcome of a cart reservation change"""
    status: ReservationStatus
    available_qty: Optional[int] = None
    item: Optional[CartItem] = None

    @property
    def accepted(self) -> bool:
        return self.status == ReservationStatus.ACCEPTED


_STATUS_BY_OUTCOME = {
    ChangeOutcome.APPLIED: ReservationStatus.ACCEPTED,
    ChangeOutcome.INSUFFICIENT_STOCK: ReservationStatus.INSUFFICIENT_STOCK,
    ChangeOutcome.NOT_FOUND: ReservationStatus.NOT_FOUND,
}


def _valid_quantity(quantity) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and 0 < quantity <= MAX_QUANTITY


class ReservationEngine:
    """
    Cart reservation operations over the store ports.

    Args:
        carts: Cart line store; its writes move the ledger atomically
        inventory: Ledger store, read for available quantities
        catalog: Variant price and sku lookup
        cart_ttl: How long a hold lives without cart activity
        policy: Retry budget for conflicts and transient errors
    """

    def __init__(
        self,
        carts: CartStore,
        inventory: InventoryStore,
        catalog: Catalog,
        cart_ttl: timedelta,
        policy: RetryPolicy,
        clock: Callable = utcnow,
    ):
        self.carts = carts
        self.inventory = inventory
        self.catalog = catalog
        self.cart_ttl = cart_ttl
        self.policy = policy
        self.clock = clock

    async def _available(self, variant_id: str) -> Optional[int]:
        record = await self.inventory.get_inventory(variant_id)
        return record.available_qty if record else None

    def _record(self, operation: str, status: ReservationStatus, started: float) -> None:
        RESERVATION_OUTCOMES.labels(operation=operation, outcome=status.value).inc()
        RESERVATION_LATENCY.labels(operation=operation).observe(time.perf_counter() - started)

    async def _run(self, operation: str, attempt) -> Tuple[Optional[ChangeOutcome], Optional[CartItem]]:
        try:
            return await retry_async(attempt, name=operation, policy=self.policy)
        except (TransientStorageError, ConcurrentModification) as e:
            logger.error("reservation_retries_exhausted", operation=operation, error=str(e))
            return None, None

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def reserve(self, variant_id: str, requested_qty: int, cart_id: str) -> ReservationResult:
        """
        Reserve ``requested_qty`` more units of a variant for a cart.

        Returns:
            ReservationResult with ACCEPTED and the updated line, or
            INSUFFICIENT_STOCK with the quantity still available
        """
        started = time.perf_counter()
        if not _valid_quantity(requested_qty):
            self._record("reserve", ReservationStatus.INVALID_QUANTITY, started)
            return ReservationResult(ReservationStatus.INVALID_QUANTITY)

        variant = await self.catalog.get_variant(variant_id)
        if variant is None or not variant.active:
            self._record("reserve", ReservationStatus.NOT_FOUND, started)
            return ReservationResult(ReservationStatus.NOT_FOUND)

        async def attempt():
            now = self.clock()
            expires_at = now + self.cart_ttl
            existing = await self.carts.find_cart_item(cart_id, variant_id)
            if existing is None:
                outcome, item = await self.carts.insert_cart_item_atomic(CartItem(
                    item_id=new_id(),
                    cart_id=cart_id,
                    variant_id=variant_id,
                    sku=variant.sku,
                    quantity=requested_qty,
                    unit_price=variant.unit_price,
                    reserved_at=now,
                    expires_at=expires_at,
                ))
            else:
                outcome, item = await self.carts.resize_cart_item_atomic(
                    existing.item_id,
                    existing.version,
                    existing.quantity + requested_qty,
                    variant.unit_price,
                    expires_at,
                )
            if outcome == ChangeOutcome.CONFLICT:
                raise ConcurrentModification(variant_id=variant_id, cart_id=cart_id)
            return outcome, item

        outcome, item = await self._run("reserve", attempt)
        return await self._finish("reserve", outcome, item, variant_id, requested_qty, cart_id, started)

    async def update_quantity(self, cart_id: str, item_id: str, quantity: int) -> ReservationResult:
        """
        Set a cart line to ``quantity``.

        A positive delta is reserved under the stock guard (the prior hold is
        left intact on rejection); a negative delta is released at once.
        """
        started = time.perf_counter()
        if not _valid_quantity(quantity):
            self._record("update", ReservationStatus.INVALID_QUANTITY, started)
            return ReservationResult(ReservationStatus.INVALID_QUANTITY)

        held = {}

        async def attempt():
            current = await self.carts.get_cart_item(item_id)
            if current is None or current.cart_id != cart_id:
                return ChangeOutcome.NOT_FOUND, None
            variant = await self.catalog.get_variant(current.variant_id)
            price = variant.unit_price if variant else current.unit_price
            held["variant_id"] = current.variant_id
            held["delta"] = quantity - current.quantity
            outcome, item = await self.carts.resize_cart_item_atomic(
                item_id,
                current.version,
                quantity,
                price,
                self.clock() + self.cart_ttl,
            )
            if outcome == ChangeOutcome.CONFLICT:
                raise ConcurrentModification(item_id=item_id, cart_id=cart_id)
            return outcome, item

        outcome, item = await self._run("update", attempt)
        return await self._finish(
            "update", outcome, item, held.get("variant_id"), held.get("delta", 0), cart_id, started
        )

    async def remove_item(self, cart_id: str, item_id: str) -> ReservationResult:
        """Delete a cart line and release its hold."""
        started = time.perf_counter()

        async def attempt():
            current = await self.carts.get_cart_item(item_id)
            if current is None or current.cart_id != cart_id:
                return ChangeOutcome.NOT_FOUND, None
            outcome, item = await self.carts.remove_cart_item_atomic(item_id, current.version)
            if outcome == ChangeOutcome.CONFLICT:
                raise ConcurrentModification(item_id=item_id, cart_id=cart_id)
            return outcome, item

        outcome, item = await self._run("remove", attempt)
        quantity = -item.quantity if item is not None else 0
        variant_id = item.variant_id if item is not None else None
        return await self._finish("remove", outcome, item, variant_id, quantity, cart_id, started)

    async def _finish(
        self,
        operation: str,
        outcome: Optional[ChangeOutcome],
        item: Optional[CartItem],
        variant_id: Optional[str],
        delta: int,
        cart_id: str,
        started: float,
    ) -> ReservationResult:
        if outcome is None:
            self._record(operation, ReservationStatus.TRANSIENT_FAILURE, started)
            return ReservationResult(ReservationStatus.TRANSIENT_FAILURE)

        status = _STATUS_BY_OUTCOME[outcome]
        available = await self._available(variant_id) if variant_id else None
        self._record(operation, status, started)

        if status == ReservationStatus.ACCEPTED:
            if delta:
                logger.info(
                    "inventory_adjustment",
                    action="reserve" if delta > 0 else "release",
                    variant_id=variant_id,
                    quantity=abs(delta),
                    cart_id=cart_id,
                    available_qty=available,
                )
        elif status == ReservationStatus.INSUFFICIENT_STOCK:
            logger.info(
                "reservation_rejected",
                variant_id=variant_id,
                requested=delta,
                available_qty=available,
                cart_id=cart_id,
            )
        return ReservationResult(status, available_qty=available, item=item)
