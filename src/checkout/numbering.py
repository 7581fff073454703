"""
Order Number Generation

Human-readable order numbers ("ORD-000123") drawn from a monotonic
sequence in the order store.
"""

from src.storage.base import OrderStore


def format_order_number(sequence: int, prefix: str = "ORD-", digits: int = 6) -> str:
    """Prefix plus the sequence value zero-padded to ``digits``; wider values are kept whole."""
    return f"{prefix}{sequence:0{digits}d}"


class OrderNumberGenerator:
    def __init__(self, orders: OrderStore, prefix: str = "ORD-", digits: int = 6, start: int = 1):
        self.orders = orders
        self.prefix = prefix
        self.digits = digits
        self.start = start

    async def next(self) -> str:
        sequence = await self.orders.next_order_sequence(self.start)
        return format_order_number(sequence, self.prefix, self.digits)
