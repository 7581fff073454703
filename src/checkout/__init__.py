"""
Checkout Module
"""
from .orchestrator import CheckoutOrchestrator
from .numbering import OrderNumberGenerator, format_order_number
from .state_machine import assert_transition, can_transition

__all__ = [
    "CheckoutOrchestrator",
    "OrderNumberGenerator",
    "format_order_number",
    "assert_transition",
    "can_transition",
]
