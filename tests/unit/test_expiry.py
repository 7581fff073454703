"""
Unit Tests - Reservation Expiry Sweep
"""
import asyncio
from datetime import timedelta

from src.events.publisher import EventType
from src.inventory.commit import InventoryCommitter
from src.inventory.expiry import ReservationSweeper
from src.inventory.reservation import ReservationEngine
from src.storage.base import InventoryState, OrderStatus, PaymentStatus, utcnow
from src.storage.memory import MemoryRepository
from tests.support import USER_ID, VARIANT_ID, place, seed


def make_sweeper(repo, publisher, policy, clock, batch_size=200) -> ReservationSweeper:
    committer = InventoryCommitter(repo, repo, publisher, policy)
    return ReservationSweeper(
        repo,
        repo,
        committer,
        order_ttl=timedelta(minutes=20),
        exempt_methods=["cod"],
        batch_size=batch_size,
        clock=clock,
    )


async def hold(repo, policy, clock, user_id=USER_ID, quantity=5):
    engine = ReservationEngine(repo, repo, repo, cart_ttl=timedelta(minutes=30), policy=policy, clock=clock)
    cart = await repo.get_or_create_cart(user_id)
    result = await engine.reserve(VARIANT_ID, quantity, cart.cart_id)
    return engine, cart.cart_id, result.item


class EditDuringSweepRepository(MemoryRepository):
    """Simulates a customer editing each line right after the sweep lists it"""

    async def list_expired_cart_items(self, now, limit):
        listed = await super().list_expired_cart_items(now, limit)
        for item in listed:
            self._items[item.item_id].version += 1
        return listed


class TestCartExpiry:
    """Tests for abandoned cart hold release"""

    async def test_abandoned_hold_released_after_ttl(self, repo, publisher, policy, clock):
        await hold(repo, policy, clock, quantity=5)
        sweeper = make_sweeper(repo, publisher, policy, clock)

        clock.advance(minutes=30)
        report = await sweeper.run_once()

        assert report.cart_items_released == 1
        assert report.units_released == 5
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 0
        assert (await repo.get_or_create_cart(USER_ID)).items == []

    async def test_hold_within_ttl_survives(self, repo, publisher, policy, clock):
        await hold(repo, policy, clock)
        sweeper = make_sweeper(repo, publisher, policy, clock)

        clock.advance(minutes=29)
        report = await sweeper.run_once()

        assert report.cart_items_released == 0
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 5

    async def test_cart_activity_refreshes_ttl(self, repo, publisher, policy, clock):
        engine, cart_id, item = await hold(repo, policy, clock)
        sweeper = make_sweeper(repo, publisher, policy, clock)

        clock.advance(minutes=20)
        await engine.update_quantity(cart_id, item.item_id, 6)
        clock.advance(minutes=15)
        report = await sweeper.run_once()

        assert report.cart_items_released == 0
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 6

    async def test_sweep_is_idempotent(self, repo, publisher, policy, clock):
        await hold(repo, policy, clock)
        sweeper = make_sweeper(repo, publisher, policy, clock)
        clock.advance(hours=1)

        await sweeper.run_once()
        second = await sweeper.run_once()

        assert second.cart_items_released == 0
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 0

    async def test_sweep_pages_through_batches(self, repo, publisher, policy, clock):
        for i in range(5):
            await hold(repo, policy, clock, user_id=f"shopper-{i}", quantity=2)
        sweeper = make_sweeper(repo, publisher, policy, clock, batch_size=2)
        clock.advance(minutes=31)

        report = await sweeper.sweep_cart_items()

        assert report.cart_items_released == 5
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 0

    async def test_line_edited_mid_sweep_is_skipped(self, publisher, policy, clock):
        repo = EditDuringSweepRepository()
        await seed(repo)
        await hold(repo, policy, clock)
        sweeper = make_sweeper(repo, publisher, policy, clock)
        clock.advance(minutes=31)

        report = await sweeper.sweep_cart_items()

        assert report.cart_items_released == 0
        assert report.skipped == 1
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 5


class TestOrderExpiry:
    """Tests for unpaid order auto-cancel"""

    async def test_unpaid_online_order_expires(self, container, repo, publisher, policy, clock):
        order = await place(container)
        publisher.drain()
        sweeper = make_sweeper(repo, publisher, policy, clock)

        report = await sweeper.expire_orders(now=utcnow() + timedelta(minutes=21))

        assert report.orders_expired == 1
        expired = await repo.get_order(order.order_id)
        assert expired.order_status == OrderStatus.CANCELLED
        assert expired.payment_status == PaymentStatus.FAILED
        assert expired.inventory_state == InventoryState.RELEASED
        assert expired.failure_reason == "payment_timeout"
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 0
        assert [e.event_type for e in publisher.drain()] == [EventType.ORDER_CANCELLED]

    async def test_recent_order_is_kept(self, container, repo, publisher, policy, clock):
        await place(container)
        sweeper = make_sweeper(repo, publisher, policy, clock)

        report = await sweeper.expire_orders(now=utcnow() + timedelta(minutes=5))

        assert report.orders_expired == 0
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 2

    async def test_cash_on_delivery_and_paid_orders_are_exempt(self, container, repo, publisher, policy, clock):
        cod = await place(container, method="cod")
        paid = await place(container)
        await container.committer.commit(paid.order_id, "pi_1")
        sweeper = make_sweeper(repo, publisher, policy, clock)

        report = await sweeper.expire_orders(now=utcnow() + timedelta(hours=2))

        assert report.orders_expired == 0
        assert (await repo.get_order(cod.order_id)).inventory_state == InventoryState.HELD


class TestSweeperLoop:
    """Tests for the background loop"""

    async def test_run_forever_stops_on_event(self, repo, publisher, policy, clock):
        await hold(repo, policy, clock)
        clock.advance(hours=1)
        sweeper = make_sweeper(repo, publisher, policy, clock)
        stop = asyncio.Event()

        task = asyncio.create_task(sweeper.run_forever(interval_seconds=0.01, stop=stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 0
