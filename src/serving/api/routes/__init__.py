"""
API Routes Module
"""
from .health import router as health_router
from .cart import router as cart_router
from .orders import router as orders_router
from .webhooks import router as webhooks_router
from .inventory import router as inventory_router

__all__ = [
    "health_router",
    "cart_router",
    "orders_router",
    "webhooks_router",
    "inventory_router",
]
