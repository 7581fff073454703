"""
Demo Data Seeder
Creates catalog variants, stock levels and customer addresses in the
configured database so the cart/checkout API can be exercised by hand.
"""

import asyncio
import random
from decimal import Decimal

from faker import Faker

from src.config import get_settings
from src.database.connection import close_database, create_tables, get_engine, get_session_factory, init_database
from src.storage.base import Address, CatalogVariant, new_id
from src.storage.sql import SqlRepository

fake = Faker("en_IN")
random.seed(42)
Faker.seed(42)

settings = get_settings()


# ==========================================
# CATALOG
# ==========================================
async def seed_variants(repo: SqlRepository, n: int = 50) -> list:
    print(f"📦 Seeding {n} variants...")
    variants = []
    for i in range(n):
        variant = await repo.add_variant(CatalogVariant(
            variant_id=new_id(),
            sku=f"SKU-{i:06d}",
            name=f"{fake.word().title()} {fake.color_name()}",
            unit_price=Decimal(random.randint(199, 9999)).quantize(Decimal("0.01")),
        ))
        await repo.set_stock(variant.variant_id, random.choice([0, 3, 10, 20, 50, 200]))
        variants.append(variant)
    print(f"   ✅ {len(variants)} variants with stock")
    return variants


# ==========================================
# CUSTOMERS
# ==========================================
async def seed_addresses(repo: SqlRepository, users: int = 10) -> dict:
    print(f"🏠 Seeding addresses for {users} users...")
    book = {}
    for i in range(users):
        user_id = f"user-{i + 1}"
        address = await repo.add_address(Address(
            address_id=new_id(),
            user_id=user_id,
            line1=fake.street_address(),
            city=fake.city(),
            postal_code=fake.postcode(),
            country="IN",
        ))
        book[user_id] = address.address_id
    print(f"   ✅ {len(book)} addresses")
    return book


async def main() -> None:
    await init_database()
    await create_tables(get_engine())
    repo = SqlRepository(get_session_factory())
    try:
        variants = await seed_variants(repo)
        book = await seed_addresses(repo)
    finally:
        await close_database()

    print("\n🎉 Demo data ready")
    print(f"   Try: X-User-Id: user-1, address {book['user-1']}, variant {variants[0].variant_id}")


if __name__ == "__main__":
    asyncio.run(main())
