"""
Inventory Commit/Release

Order-level ledger finalization:
- commit: stock_qty -= q and reserved_qty -= q for every line, order -> paid
- release: reserved_qty -= q for every line, order -> cancelled

Both are single atomic store steps and idempotent per order: an order that
already reached a terminal inventory state yields NOOP. Transient storage
errors are retried and then propagated; a commit the ledger refuses is
flagged commit_failed for reconciliation and keeps its reservation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from src.common.errors import InvariantViolation, TransientStorageError
from src.common.metrics import INVENTORY_FINALIZATIONS
from src.common.retry import RetryPolicy, retry_async
from src.events.publisher import EventPublisher, EventType, OutboundEvent
from src.storage.base import (
    FinalizeOutcome,
    InventoryStore,
    Order,
    OrderStore,
    PaymentStatus,
)

logger = structlog.get_logger(__name__)


class CommitStatus(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class CommitResult:
    status: CommitStatus
    order: Optional[Order] = None

    def as_dict(self) -> dict:
        data = {"status": self.status.value}
        if self.order is not None:
            data.update({
                "order_id": self.order.order_id,
                "order_number": self.order.order_number,
                "payment_status": self.order.payment_status.value,
                "inventory_state": self.order.inventory_state.value,
            })
        return data


def order_event_payload(order: Order) -> dict:
    return {
        "order_id": order.order_id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "payment_status": order.payment_status.value,
        "order_status": order.order_status.value,
        "grand_total": str(order.grand_total),
        "currency": order.currency,
    }


class InventoryCommitter:
    """
    Applies payment outcomes to the ledger.

    Args:
        inventory: Ledger store with the order-level atomic steps
        orders: Order store, used to flag commit failures
        publisher: Outbound event channel
        policy: Retry budget for transient storage errors
        low_stock_threshold: Publish an alert when available_qty drops to this
    """

    def __init__(
        self,
        inventory: InventoryStore,
        orders: OrderStore,
        publisher: EventPublisher,
        policy: RetryPolicy,
        low_stock_threshold: int = 5,
    ):
        self.inventory = inventory
        self.orders = orders
        self.publisher = publisher
        self.policy = policy
        self.low_stock_threshold = low_stock_threshold

    async def commit(self, order_id: str, payment_reference: Optional[str] = None) -> CommitResult:
        """
        Convert an order's held reservation into a stock decrement.

        Raises:
            TransientStorageError: storage stayed unavailable through every retry
        """
        try:
            outcome, order = await retry_async(
                lambda: self.inventory.commit_order_atomic(order_id, payment_reference),
                name="commit_order",
                policy=self.policy,
                retry_on=(TransientStorageError,),
            )
        except InvariantViolation as e:
            return await self._flag_failed(order_id, payment_reference, e)

        status = CommitStatus(outcome.value)
        INVENTORY_FINALIZATIONS.labels(action="commit", outcome=status.value).inc()

        if outcome == FinalizeOutcome.APPLIED:
            for line in order.items:
                logger.info(
                    "inventory_adjustment",
                    action="commit",
                    variant_id=line.variant_id,
                    quantity=line.quantity,
                    order_id=order_id,
                )
            try:
                self.publisher.publish(OutboundEvent(
                    EventType.ORDER_PAID, order_event_payload(order), key=order_id,
                ))
                await self._check_low_stock(order)
            except Exception as e:
                # The commit is already durable; notifications never undo or fail it
                logger.error(
                    "post_commit_notification_failed",
                    order_id=order_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        elif outcome == FinalizeOutcome.REJECTED:
            # Paid after the hold was released; needs a refund, not stock
            logger.error(
                "payment_for_released_order",
                order_id=order_id,
                payment_reference=payment_reference,
                inventory_state=order.inventory_state.value,
            )
        else:
            logger.info("order_commit_skipped", order_id=order_id, outcome=outcome.value)
        return CommitResult(status, order)

    async def _flag_failed(self, order_id: str, payment_reference: Optional[str], error: Exception) -> CommitResult:
        INVENTORY_FINALIZATIONS.labels(action="commit", outcome=CommitStatus.FAILED.value).inc()
        logger.error(
            "inventory_commit_failed",
            order_id=order_id,
            payment_reference=payment_reference,
            error=str(error),
        )
        order = await self.orders.mark_commit_failed(order_id, str(error), payment_reference)
        if order is not None:
            self.publisher.publish(OutboundEvent(
                EventType.ORDER_COMMIT_FAILED, order_event_payload(order), key=order_id,
            ))
        return CommitResult(CommitStatus.FAILED, order)

    async def release(
        self,
        order_id: str,
        reason: str,
        payment_status: PaymentStatus = PaymentStatus.FAILED,
    ) -> CommitResult:
        """
        Give an order's held reservation back to available stock.

        Raises:
            TransientStorageError: storage stayed unavailable through every retry
        """
        outcome, order = await retry_async(
            lambda: self.inventory.release_order_atomic(order_id, payment_status, reason),
            name="release_order",
            policy=self.policy,
            retry_on=(TransientStorageError,),
        )
        status = CommitStatus(outcome.value)
        INVENTORY_FINALIZATIONS.labels(action="release", outcome=status.value).inc()

        if outcome == FinalizeOutcome.APPLIED:
            for line in order.items:
                logger.info(
                    "inventory_adjustment",
                    action="release",
                    variant_id=line.variant_id,
                    quantity=line.quantity,
                    order_id=order_id,
                    reason=reason,
                )
            self.publisher.publish(OutboundEvent(
                EventType.ORDER_CANCELLED,
                {**order_event_payload(order), "reason": reason},
                key=order_id,
            ))
        else:
            logger.info("order_release_skipped", order_id=order_id, outcome=outcome.value, reason=reason)
        return CommitResult(status, order)

    async def _check_low_stock(self, order: Order) -> None:
        for variant_id in {line.variant_id for line in order.items}:
            record = await self.inventory.get_inventory(variant_id)
            if record is None or record.available_qty > self.low_stock_threshold:
                continue
            logger.warning(
                "low_stock",
                variant_id=variant_id,
                available_qty=record.available_qty,
                threshold=self.low_stock_threshold,
            )
            self.publisher.publish(OutboundEvent(
                EventType.LOW_STOCK,
                {
                    "variant_id": variant_id,
                    "stock_qty": record.stock_qty,
                    "reserved_qty": record.reserved_qty,
                    "available_qty": record.available_qty,
                },
                key=variant_id,
            ))
