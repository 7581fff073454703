"""
Checkout Orchestrator

Converts a cart into an order. The cart lines' reservations are not checked
against stock again: the order takes over the holds they already own. The
order insert and the removal of exactly the snapshotted cart lines happen in
one atomic store step; if the cart changed in between, the snapshot is
retaken and the step retried.

Also hosts the order lifecycle operations that sit next to checkout:
user cancellation (releases the hold) and fulfilment transitions.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Sequence

import structlog

from src.common.errors import (
    EmptyCart,
    IllegalTransition,
    InvalidAddress,
    InvalidPaymentMethod,
    OrderNumberTaken,
    ConcurrentModification,
    RecordNotFound,
)
from src.common.metrics import ORDERS_PLACED
from src.common.retry import RetryPolicy, retry_async
from src.checkout.numbering import OrderNumberGenerator
from src.checkout.state_machine import assert_transition
from src.events.publisher import EventPublisher, EventType, OutboundEvent
from src.inventory.commit import CommitStatus, InventoryCommitter, order_event_payload
from src.storage.base import (
    AddressBook,
    Cart,
    CartStore,
    InventoryState,
    Order,
    OrderItem,
    OrderStatus,
    OrderStore,
    PaymentStatus,
    ReservationSnapshot,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

USER_CANCEL_REASON = "cancelled_by_customer"


class CheckoutOrchestrator:
    """
    Order placement and lifecycle.

    Args:
        carts: Cart store (snapshot source)
        orders: Order store with the atomic create step
        addresses: Address ownership lookup
        committer: Ledger commit/release for cancellation and COD delivery
        publisher: Outbound event channel
        numbers: Order number allocator
        policy: Retry budget for cart races and transient storage errors
        payment_methods: Methods accepted at checkout
        deferred_methods: Methods paid on delivery
        max_number_attempts: Order number collisions tolerated per attempt
    """

    def __init__(
        self,
        carts: CartStore,
        orders: OrderStore,
        addresses: AddressBook,
        committer: InventoryCommitter,
        publisher: EventPublisher,
        numbers: OrderNumberGenerator,
        policy: RetryPolicy,
        payment_methods: Sequence[str] = ("stripe", "razorpay", "cod"),
        deferred_methods: Sequence[str] = ("cod",),
        max_number_attempts: int = 5,
        currency: str = "INR",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.carts = carts
        self.orders = orders
        self.addresses = addresses
        self.committer = committer
        self.publisher = publisher
        self.numbers = numbers
        self.policy = policy
        self.payment_methods = [m.lower() for m in payment_methods]
        self.deferred_methods = [m.lower() for m in deferred_methods]
        self.max_number_attempts = max_number_attempts
        self.currency = currency
        self.clock = clock

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def checkout(
        self,
        user_id: str,
        shipping_address_id: str,
        billing_address_id: str,
        payment_method: str,
    ) -> Order:
        """
        Place an order from the caller's cart.

        Raises:
            InvalidPaymentMethod: method not enabled
            InvalidAddress: either address missing or owned by someone else
            EmptyCart: nothing to order
            TransientStorageError: storage unavailable after retries
        """
        method = (payment_method or "").lower()
        if method not in self.payment_methods:
            raise InvalidPaymentMethod(payment_method=payment_method)
        if not shipping_address_id or not billing_address_id:
            raise InvalidAddress()
        for address_id in {shipping_address_id, billing_address_id}:
            if not await self.addresses.owns(user_id, address_id):
                logger.warning("checkout_address_rejected", user_id=user_id, address_id=address_id)
                raise InvalidAddress(address_id=address_id)

        async def attempt() -> Order:
            cart = await self.carts.get_or_create_cart(user_id)
            if not cart.items:
                raise EmptyCart()
            order = self._build_order(cart, shipping_address_id, billing_address_id, method)
            snapshot = [ReservationSnapshot(item.item_id, item.version) for item in cart.items]
            return await self._insert_with_number(order, snapshot)

        order = await retry_async(attempt, name="checkout", policy=self.policy)

        ORDERS_PLACED.labels(payment_method=method).inc()
        logger.info(
            "order_placed",
            order_id=order.order_id,
            order_number=order.order_number,
            user_id=user_id,
            lines=len(order.items),
            grand_total=str(order.grand_total),
            payment_method=method,
        )
        self.publisher.publish(OutboundEvent(
            EventType.ORDER_PLACED, order_event_payload(order), key=order.order_id,
        ))
        return order

    def _build_order(self, cart: Cart, shipping_address_id: str, billing_address_id: str, method: str) -> Order:
        items: List[OrderItem] = [
            OrderItem(
                variant_id=item.variant_id,
                sku=item.sku,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.line_total,
            )
            for item in cart.items
        ]
        subtotal = sum((line.line_total for line in items), Decimal("0"))
        now = self.clock()
        return Order(
            order_id=new_id(),
            order_number="",
            user_id=cart.user_id,
            items=items,
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
            payment_method=method,
            subtotal=subtotal,
            grand_total=subtotal,
            currency=self.currency,
            created_at=now,
            updated_at=now,
        )

    async def _insert_with_number(self, order: Order, snapshot: Sequence[ReservationSnapshot]) -> Order:
        for _ in range(self.max_number_attempts):
            order.order_number = await self.numbers.next()
            try:
                return await self.orders.create_order_atomic(order, snapshot)
            except OrderNumberTaken:
                logger.warning("order_number_collision", order_number=order.order_number)
        raise OrderNumberTaken("could not allocate a free order number")

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def get_order(self, user_id: str, order_id: str) -> Order:
        order = await self.orders.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise RecordNotFound("Order not found", order_id=order_id)
        return order

    async def cancel(self, user_id: str, order_id: str) -> Order:
        """
        Cancel an unpaid order and release its hold.

        Raises:
            RecordNotFound: no such order for this user
            IllegalTransition: already paid, shipped, or awaiting reconciliation
        """
        order = await self.get_order(user_id, order_id)
        if order.order_status == OrderStatus.CANCELLED:
            return order
        if order.inventory_state != InventoryState.HELD or order.payment_status != PaymentStatus.PENDING:
            raise IllegalTransition("Only unpaid orders can be cancelled", order_id=order_id)
        assert_transition(order, OrderStatus.CANCELLED)

        result = await self.committer.release(order_id, USER_CANCEL_REASON, PaymentStatus.FAILED)
        if result.status in (CommitStatus.APPLIED, CommitStatus.NOOP):
            return result.order
        raise IllegalTransition("Order can no longer be cancelled", order_id=order_id)

    async def ship(self, order_id: str) -> Order:
        return await self._advance(order_id, OrderStatus.SHIPPED)

    async def deliver(self, order_id: str) -> Order:
        """Mark delivered; cash-on-delivery orders commit their hold here."""
        order = await self._advance(order_id, OrderStatus.DELIVERED)
        if order.payment_method in self.deferred_methods and order.inventory_state == InventoryState.HELD:
            result = await self.committer.commit(order_id, payment_reference=f"{order.payment_method}:{order.order_number}")
            if result.order is not None:
                order = result.order
        return order

    async def _advance(self, order_id: str, target: OrderStatus) -> Order:
        async def attempt() -> Order:
            order = await self.orders.get_order(order_id)
            if order is None:
                raise RecordNotFound("Order not found", order_id=order_id)
            if order.order_status == target:
                return order
            assert_transition(order, target, self.deferred_methods)
            updated = await self.orders.transition_order(order_id, order.version, target)
            if updated is None:
                raise ConcurrentModification(order_id=order_id)
            logger.info(
                "order_status_changed",
                order_id=order_id,
                from_status=order.order_status.value,
                to_status=target.value,
            )
            return updated

        return await retry_async(attempt, name=f"order_{target.value}", policy=self.policy)
