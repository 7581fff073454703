"""
Unit Tests - Reservation Engine
"""
import asyncio
import pytest
from datetime import timedelta

from src.common.errors import TransientStorageError
from src.common.retry import RetryPolicy
from src.inventory.reservation import ReservationEngine, ReservationStatus
from src.storage.memory import MemoryRepository
from tests.support import VARIANT_ID, seed


def make_engine(repo, policy, clock=None) -> ReservationEngine:
    kwargs = {"clock": clock} if clock else {}
    return ReservationEngine(repo, repo, repo, cart_ttl=timedelta(minutes=30), policy=policy, **kwargs)


async def cart_id_for(repo, user_id: str) -> str:
    return (await repo.get_or_create_cart(user_id)).cart_id


class FlakyRepository(MemoryRepository):
    """Fails the first ``failures`` cart inserts with a transient error"""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def insert_cart_item_atomic(self, item):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStorageError("connection reset")
        return await super().insert_cart_item_atomic(item)


class TestReserve:
    """Tests for ReservationEngine.reserve"""

    async def test_reserve_accepts_within_stock(self, repo, policy, clock):
        """Reserving moves quantity into reserved_qty and stamps the TTL"""
        engine = make_engine(repo, policy, clock)
        cart_id = await cart_id_for(repo, "user-1")

        result = await engine.reserve(VARIANT_ID, 3, cart_id)

        assert result.status == ReservationStatus.ACCEPTED
        assert result.accepted
        assert result.available_qty == 17
        assert result.item.quantity == 3
        assert result.item.expires_at == clock.now + timedelta(minutes=30)
        record = await repo.get_inventory(VARIANT_ID)
        assert (record.stock_qty, record.reserved_qty) == (20, 3)

    async def test_concurrent_reservations_never_oversell(self, yielding_repo, policy):
        """10 carts asking for 3 of 20 units: exactly 6 succeed"""
        engine = make_engine(yielding_repo, policy)
        cart_ids = [await cart_id_for(yielding_repo, f"shopper-{i}") for i in range(10)]

        results = await asyncio.gather(*(engine.reserve(VARIANT_ID, 3, cid) for cid in cart_ids))

        statuses = [r.status for r in results]
        assert statuses.count(ReservationStatus.ACCEPTED) == 6
        assert statuses.count(ReservationStatus.INSUFFICIENT_STOCK) == 4
        record = await yielding_repo.get_inventory(VARIANT_ID)
        assert record.reserved_qty == 18
        assert record.stock_qty == 20

    async def test_rejection_reports_available_quantity(self, repo, policy):
        engine = make_engine(repo, policy)
        cart_id = await cart_id_for(repo, "user-1")

        result = await engine.reserve(VARIANT_ID, 21, cart_id)

        assert result.status == ReservationStatus.INSUFFICIENT_STOCK
        assert result.available_qty == 20
        assert result.item is None
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 0

    async def test_unknown_variant(self, repo, policy):
        engine = make_engine(repo, policy)
        cart_id = await cart_id_for(repo, "user-1")

        result = await engine.reserve("no-such-variant", 1, cart_id)

        assert result.status == ReservationStatus.NOT_FOUND

    @pytest.mark.parametrize("quantity", [0, -2, True, 1.5, 2**31, 10**20])
    async def test_invalid_quantity_leaves_ledger_untouched(self, repo, policy, quantity):
        engine = make_engine(repo, policy)
        cart_id = await cart_id_for(repo, "user-1")

        result = await engine.reserve(VARIANT_ID, quantity, cart_id)

        assert result.status == ReservationStatus.INVALID_QUANTITY
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 0

    async def test_adding_same_variant_grows_the_line(self, repo, policy):
        engine = make_engine(repo, policy)
        cart_id = await cart_id_for(repo, "user-1")

        await engine.reserve(VARIANT_ID, 2, cart_id)
        result = await engine.reserve(VARIANT_ID, 3, cart_id)

        cart = await repo.get_or_create_cart("user-1")
        assert len(cart.items) == 1
        assert cart.items[0].quantity == 5
        assert result.available_qty == 15

    async def test_concurrent_adds_to_one_cart_are_all_counted(self, yielding_repo):
        """Lost compare-and-swaps on the cart line are retried, not dropped"""
        engine = make_engine(yielding_repo, RetryPolicy(attempts=10, min_wait=0, max_wait=0))
        cart_id = await cart_id_for(yielding_repo, "user-1")

        results = await asyncio.gather(*(engine.reserve(VARIANT_ID, 2, cart_id) for _ in range(5)))

        assert all(r.accepted for r in results)
        cart = await yielding_repo.get_or_create_cart("user-1")
        assert cart.items[0].quantity == 10
        assert (await yielding_repo.get_inventory(VARIANT_ID)).reserved_qty == 10

    async def test_transient_error_is_retried(self, policy):
        repo = FlakyRepository(failures=2)
        await seed(repo)
        engine = make_engine(repo, policy)
        cart_id = await cart_id_for(repo, "user-1")

        result = await engine.reserve(VARIANT_ID, 1, cart_id)

        assert result.accepted

    async def test_exhausted_retries_report_transient_failure(self, policy):
        repo = FlakyRepository(failures=10)
        await seed(repo)
        engine = make_engine(repo, policy)
        cart_id = await cart_id_for(repo, "user-1")

        result = await engine.reserve(VARIANT_ID, 1, cart_id)

        assert result.status == ReservationStatus.TRANSIENT_FAILURE
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 0


class TestUpdateAndRemove:
    """Tests for quantity changes and removal"""

    async def _line(self, repo, engine, quantity=4):
        cart_id = await cart_id_for(repo, "user-1")
        result = await engine.reserve(VARIANT_ID, quantity, cart_id)
        return cart_id, result.item

    async def test_increase_reserves_only_the_delta(self, repo, policy):
        engine = make_engine(repo, policy)
        cart_id, item = await self._line(repo, engine)

        result = await engine.update_quantity(cart_id, item.item_id, 7)

        assert result.accepted
        assert result.item.quantity == 7
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 7

    async def test_decrease_releases_the_delta(self, repo, policy):
        engine = make_engine(repo, policy)
        cart_id, item = await self._line(repo, engine)

        await engine.update_quantity(cart_id, item.item_id, 1)

        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 1

    async def test_rejected_increase_keeps_prior_hold(self, repo, policy):
        engine = make_engine(repo, policy)
        cart_id, item = await self._line(repo, engine)

        result = await engine.update_quantity(cart_id, item.item_id, 25)

        assert result.status == ReservationStatus.INSUFFICIENT_STOCK
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 4
        assert (await repo.get_cart_item(item.item_id)).quantity == 4

    async def test_zero_quantity_is_invalid(self, repo, policy):
        engine = make_engine(repo, policy)
        cart_id, item = await self._line(repo, engine)

        result = await engine.update_quantity(cart_id, item.item_id, 0)

        assert result.status == ReservationStatus.INVALID_QUANTITY
        assert (await repo.get_inventory(VARIANT_ID)).reserved_qty == 4

    async def test_other_users_line_is_not_found(self, repo, policy):
        engine = make_engine(repo, policy)
        _, item = await self._line(repo, engine)
        intruder_cart = await cart_id_for(repo, "user-2")

        assert (await engine.update_quantity(intruder_cart, item.item_id, 1)).status == ReservationStatus.NOT_FOUND
        assert (await engine.remove_item(intruder_cart, item.item_id)).status == ReservationStatus.NOT_FOUND

    async def test_remove_releases_the_line(self, repo, policy):
        engine = make_engine(repo, policy)
        cart_id, item = await self._line(repo, engine)

        result = await engine.remove_item(cart_id, item.item_id)

        assert result.accepted
        assert result.available_qty == 20
        assert await repo.get_cart_item(item.item_id) is None
        assert (await engine.remove_item(cart_id, item.item_id)).status == ReservationStatus.NOT_FOUND
