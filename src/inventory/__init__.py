"""
Inventory Module

Reservation, commit/release and expiry of ledger holds.
"""
from .reservation import ReservationEngine, ReservationResult, ReservationStatus
from .commit import InventoryCommitter, CommitResult, CommitStatus
from .expiry import ReservationSweeper, SweepReport

__all__ = [
    "ReservationEngine",
    "ReservationResult",
    "ReservationStatus",
    "InventoryCommitter",
    "CommitResult",
    "CommitStatus",
    "ReservationSweeper",
    "SweepReport",
]
