"""
Serving Module
"""
from .cache import init_redis, close_redis, check_redis_health

__all__ = [
    "init_redis",
    "close_redis",
    "check_redis_health",
]
