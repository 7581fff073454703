"""
Error Types

Exceptions raised across the service. Business rejections that callers must
branch on (insufficient stock, version conflicts) are returned as result
values instead; everything here is raised and mapped to an HTTP status by the
API exception handlers.
"""

from typing import Optional


class CheckoutError(Exception):
    """Base class for all errors the API translates into a JSON response."""

    status_code: int = 500
    default_message: str = "internal error"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


# =============================================================================
# STORAGE
# =============================================================================

class TransientStorageError(CheckoutError):
    """Storage was unreachable or timed out; safe to retry later."""

    status_code = 503
    default_message = "storage temporarily unavailable"


class ConcurrentModification(CheckoutError):
    """A compare-and-swap on a versioned row lost the race."""

    status_code = 409
    default_message = "resource was modified concurrently"


class RecordNotFound(CheckoutError):
    status_code = 404
    default_message = "not found"


class InvariantViolation(CheckoutError):
    """A write would break stock_qty >= reserved_qty >= 0."""

    status_code = 409
    default_message = "inventory invariant violated"


# =============================================================================
# CHECKOUT
# =============================================================================

class EmptyCart(CheckoutError):
    status_code = 400
    default_message = "Cart is empty"


class InvalidAddress(CheckoutError):
    status_code = 400
    default_message = "Invalid shipping or billing address"


class InvalidPaymentMethod(CheckoutError):
    status_code = 400
    default_message = "Invalid payment method"


class InsufficientStock(CheckoutError):
    status_code = 400
    default_message = "insufficient stock"


class InvalidQuantity(CheckoutError):
    status_code = 400
    default_message = "quantity must be a positive integer"


class OrderNumberTaken(CheckoutError):
    """Sequence produced a number already used by another order."""

    status_code = 409
    default_message = "order number collision"


class IllegalTransition(CheckoutError):
    status_code = 409
    default_message = "order cannot move to the requested status"


# =============================================================================
# WEBHOOKS
# =============================================================================

class WebhookError(CheckoutError):
    status_code = 400
    default_message = "webhook rejected"


class UnknownProvider(WebhookError):
    status_code = 404
    default_message = "unknown payment provider"


class MalformedSignatureHeader(WebhookError):
    status_code = 400
    default_message = "missing or malformed signature header"


class SignatureMismatch(WebhookError):
    status_code = 401
    default_message = "invalid signature"


class CorruptedPayload(WebhookError):
    """Signature verified but the body cannot be interpreted."""

    status_code = 500
    default_message = "webhook payload could not be processed"
