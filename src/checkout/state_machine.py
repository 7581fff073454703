"""
Order Status Transitions

    created -> shipped -> delivered
    created -> cancelled

Payment and inventory state move separately (webhooks and commit/release);
fulfilment additionally requires the order to be paid unless its payment is
deferred (cash on delivery).
"""

from typing import Dict, FrozenSet, Sequence

from src.common.errors import IllegalTransition
from src.storage.base import Order, OrderStatus, PaymentStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    if current == target:
        return True
    return target in TRANSITIONS.get(current, frozenset())


def assert_transition(order: Order, target: OrderStatus, deferred_methods: Sequence[str] = ()) -> None:
    """
    Raise IllegalTransition unless ``order`` may move to ``target``.

    Args:
        order: Current order snapshot
        target: Requested fulfilment status
        deferred_methods: Payment methods that may ship before payment
    """
    if not can_transition(order.order_status, target):
        raise IllegalTransition(
            f"Invalid status transition from {order.order_status.value} to {target.value}",
            order_id=order.order_id,
        )
    if target == OrderStatus.SHIPPED:
        paid = order.payment_status == PaymentStatus.PAID
        deferred = order.payment_method in deferred_methods and order.payment_status == PaymentStatus.PENDING
        if not (paid or deferred):
            raise IllegalTransition("Order must be paid before shipping", order_id=order.order_id)
