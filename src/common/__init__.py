"""
Shared building blocks: error types, retry policy and metrics.
"""
from .errors import (
    CheckoutError,
    TransientStorageError,
    RecordNotFound,
    ConcurrentModification,
)

__all__ = [
    "CheckoutError",
    "TransientStorageError",
    "RecordNotFound",
    "ConcurrentModification",
]
