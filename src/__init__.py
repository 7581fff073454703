"""
Checkout Inventory Core

Inventory reservation under concurrent checkout and idempotent payment
webhook finalization.
"""

__version__ = "1.0.0"
