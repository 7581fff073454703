"""
Shared test helpers: seed data, a controllable clock and an interleaving
memory backend.
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

from src.storage.base import Address, CatalogVariant
from src.storage.memory import MemoryRepository

VARIANT_ID = "var-tee-m"
USER_ID = "user-1"
OTHER_USER_ID = "user-2"
ADDRESS_ID = "addr-1"
OTHER_ADDRESS_ID = "addr-2"

STRIPE_SECRET = "whsec_test_secret"
RAZORPAY_SECRET = "rzp_test_secret"


class FakeClock:
    """Controllable naive-UTC clock"""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class YieldingRepository(MemoryRepository):
    """
    Memory backend that hands control back to the event loop before reads
    and ledger steps, so gathered coroutines interleave the way concurrent
    requests against a database do.
    """

    async def find_cart_item(self, cart_id, variant_id):
        await asyncio.sleep(0)
        return await super().find_cart_item(cart_id, variant_id)

    async def get_cart_item(self, item_id):
        await asyncio.sleep(0)
        return await super().get_cart_item(item_id)

    async def commit_order_atomic(self, order_id, payment_reference):
        await asyncio.sleep(0)
        return await super().commit_order_atomic(order_id, payment_reference)

    async def insert_if_absent(self, event):
        await asyncio.sleep(0)
        return await super().insert_if_absent(event)


async def seed(repo, stock: int = 20, price: str = "499.00", variant_id: str = VARIANT_ID) -> None:
    await repo.add_variant(CatalogVariant(
        variant_id=variant_id,
        sku=f"SKU-{variant_id}",
        name="Crew neck tee",
        unit_price=Decimal(price),
    ))
    await repo.set_stock(variant_id, stock)
    await repo.add_address(Address(address_id=ADDRESS_ID, user_id=USER_ID, line1="12 MG Road", city="Pune"))
    await repo.add_address(Address(address_id=OTHER_ADDRESS_ID, user_id=OTHER_USER_ID, line1="4 Park St", city="Kolkata"))


async def fill_cart(container, user_id: str = USER_ID, quantity: int = 2) -> str:
    cart = await container.repository.get_or_create_cart(user_id)
    result = await container.reservations.reserve(VARIANT_ID, quantity, cart.cart_id)
    assert result.accepted
    return cart.cart_id


async def place(container, method: str = "stripe", user_id: str = USER_ID, address_id: str = ADDRESS_ID, quantity: int = 2):
    await fill_cart(container, user_id, quantity)
    return await container.checkout.checkout(user_id, address_id, address_id, method)
