"""
API Request/Response Models

Wire format is camelCase; handlers build responses from store records with
the ``from_*`` constructors.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.storage.base import MAX_QUANTITY, Cart, CartItem, InventoryRecord, Order, OrderItem


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# REQUESTS
# =============================================================================

class AddCartItemRequest(CamelModel):
    product_variant_id: str = Field(min_length=1)
    quantity: int


class UpdateCartItemRequest(CamelModel):
    quantity: int


class CheckoutRequest(CamelModel):
    shipping_address_id: str
    billing_address_id: str
    payment_method: str


class SetStockRequest(CamelModel):
    stock_qty: int = Field(ge=0, le=MAX_QUANTITY)


# =============================================================================
# RESPONSES
# =============================================================================

class CartItemResponse(CamelModel):
    item_id: str
    product_variant_id: str
    sku: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    expires_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: CartItem) -> "CartItemResponse":
        return cls(
            item_id=item.item_id,
            product_variant_id=item.variant_id,
            sku=item.sku,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.line_total,
            expires_at=item.expires_at,
        )


class CartResponse(CamelModel):
    cart_id: str
    user_id: str
    items: List[CartItemResponse]
    subtotal: Decimal

    @classmethod
    def from_cart(cls, cart: Cart) -> "CartResponse":
        return cls(
            cart_id=cart.cart_id,
            user_id=cart.user_id,
            items=[CartItemResponse.from_item(item) for item in cart.items],
            subtotal=cart.subtotal,
        )


class OrderItemResponse(CamelModel):
    product_variant_id: str
    sku: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    @classmethod
    def from_item(cls, item: OrderItem) -> "OrderItemResponse":
        return cls(
            product_variant_id=item.variant_id,
            sku=item.sku,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.line_total,
        )


class OrderResponse(CamelModel):
    order_id: str
    order_number: str
    user_id: str
    items: List[OrderItemResponse]
    shipping_address_id: str
    billing_address_id: str
    payment_method: str
    subtotal: Decimal
    grand_total: Decimal
    currency: str
    payment_status: str
    order_status: str
    inventory_state: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            order_id=order.order_id,
            order_number=order.order_number,
            user_id=order.user_id,
            items=[OrderItemResponse.from_item(item) for item in order.items],
            shipping_address_id=order.shipping_address_id,
            billing_address_id=order.billing_address_id,
            payment_method=order.payment_method,
            subtotal=order.subtotal,
            grand_total=order.grand_total,
            currency=order.currency,
            payment_status=order.payment_status.value,
            order_status=order.order_status.value,
            inventory_state=order.inventory_state.value,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class InventoryResponse(CamelModel):
    variant_id: str
    stock_qty: int
    reserved_qty: int
    available_qty: int
    version: int

    @classmethod
    def from_record(cls, record: InventoryRecord) -> "InventoryResponse":
        return cls(
            variant_id=record.variant_id,
            stock_qty=record.stock_qty,
            reserved_qty=record.reserved_qty,
            available_qty=record.available_qty,
            version=record.version,
        )


class WebhookResponse(BaseModel):
    status: str
    result: Dict[str, Any] = Field(default_factory=dict)
