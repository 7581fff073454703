"""
Reservation Expiry Sweep

Releases holds nobody is going to pay for:
- cart lines whose expires_at has passed (refreshed on every cart edit)
- unpaid online orders older than the order TTL (deferred methods such as
  cash on delivery are exempt)

Each release is the same compare-and-swap step a user removal uses, so the
sweep is idempotent and safe next to live traffic: a line edited after it
was listed loses nothing.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

import structlog

from src.common.errors import TransientStorageError
from src.common.metrics import SWEEP_RELEASES
from src.inventory.commit import CommitStatus, InventoryCommitter
from src.storage.base import CartStore, ChangeOutcome, OrderStore, PaymentStatus, utcnow

logger = structlog.get_logger(__name__)

ORDER_TIMEOUT_REASON = "payment_timeout"


@dataclass
class SweepReport:
    cart_items_released: int = 0
    units_released: int = 0
    orders_expired: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "cart_items_released": self.cart_items_released,
            "units_released": self.units_released,
            "orders_expired": self.orders_expired,
            "skipped": self.skipped,
        }


class ReservationSweeper:
    """Periodic release of abandoned cart holds and unpaid orders."""

    def __init__(
        self,
        carts: CartStore,
        orders: OrderStore,
        committer: InventoryCommitter,
        order_ttl: timedelta,
        exempt_methods: Sequence[str] = ("cod",),
        batch_size: int = 200,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.carts = carts
        self.orders = orders
        self.committer = committer
        self.order_ttl = order_ttl
        self.exempt_methods = list(exempt_methods)
        self.batch_size = batch_size
        self.clock = clock

    async def sweep_cart_items(self, now: Optional[datetime] = None, report: Optional[SweepReport] = None) -> SweepReport:
        now = now or self.clock()
        report = report or SweepReport()
        while True:
            expired = await self.carts.list_expired_cart_items(now, self.batch_size)
            released = 0
            for item in expired:
                outcome, _ = await self.carts.remove_cart_item_atomic(item.item_id, item.version)
                if outcome != ChangeOutcome.APPLIED:
                    report.skipped += 1
                    continue
                released += 1
                report.cart_items_released += 1
                report.units_released += item.quantity
                SWEEP_RELEASES.labels(kind="cart_item").inc()
                logger.info(
                    "inventory_adjustment",
                    action="expire",
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    cart_id=item.cart_id,
                    expired_at=item.expires_at.isoformat() if item.expires_at else None,
                )
            # Stop on a short page or when a whole page was skipped
            if len(expired) < self.batch_size or released == 0:
                return report

    async def expire_orders(self, now: Optional[datetime] = None, report: Optional[SweepReport] = None) -> SweepReport:
        now = now or self.clock()
        report = report or SweepReport()
        stale = await self.orders.list_stale_orders(now - self.order_ttl, self.exempt_methods, self.batch_size)
        for order in stale:
            result = await self.committer.release(order.order_id, ORDER_TIMEOUT_REASON, PaymentStatus.FAILED)
            if result.status == CommitStatus.APPLIED:
                report.orders_expired += 1
                report.units_released += sum(line.quantity for line in order.items)
                SWEEP_RELEASES.labels(kind="order").inc()
            else:
                report.skipped += 1
        return report

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """One full pass over expired cart lines and stale orders."""
        now = now or self.clock()
        report = SweepReport()
        await self.sweep_cart_items(now, report)
        await self.expire_orders(now, report)
        if report.cart_items_released or report.orders_expired:
            logger.info("reservation_sweep_completed", **report.as_dict())
        return report

    async def run_forever(self, interval_seconds: float, stop: asyncio.Event) -> None:
        """Sweep every ``interval_seconds`` until ``stop`` is set."""
        logger.info("reservation_sweeper_started", interval_seconds=interval_seconds)
        while not stop.is_set():
            try:
                await self.run_once()
            except TransientStorageError as e:
                logger.warning("reservation_sweep_deferred", error=str(e))
            except Exception:
                logger.exception("reservation_sweep_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("reservation_sweeper_stopped")
