"""
Database Models - Checkout Ledger

This module defines the transactional tables behind the storage ports:

Ledger:
- InventoryRecordModel: per-variant stock/reserved counters (check constrained)

Collaborator mirrors:
- CatalogVariantModel: variant sku and price snapshot source
- AddressModel: address ownership

Cart & Orders:
- CartModel / CartItemModel: live reservations
- OrderModel / OrderItemModel: checkout snapshots
- OrderSequenceModel: order number allocator

Webhooks:
- WebhookEventModel: dedup records keyed by (provider, event_id)
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from src.storage.base import (
    InventoryState,
    OrderStatus,
    PaymentStatus,
    WebhookStatus,
    utcnow,
)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _enum(enum_cls, name: str) -> SQLEnum:
    # Store enum values ("paid"), not member names ("PAID")
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# LEDGER
# =============================================================================

class InventoryRecordModel(Base):
    """
    Inventory Ledger Table

    One row per sellable variant. Every write is a guarded single UPDATE;
    the check constraints reject anything that would oversell.
    """
    __tablename__ = "inventory_records"

    variant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stock_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("stock_qty >= 0", name="ck_inventory_stock_nonneg"),
        CheckConstraint("reserved_qty >= 0", name="ck_inventory_reserved_nonneg"),
        CheckConstraint("reserved_qty <= stock_qty", name="ck_inventory_reserved_le_stock"),
    )


# =============================================================================
# COLLABORATOR MIRRORS
# =============================================================================

class CatalogVariantModel(Base):
    """Catalog variant mirror used for sku and price snapshots"""
    __tablename__ = "catalog_variants"

    variant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)


class AddressModel(Base):
    __tablename__ = "addresses"

    address_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    line1: Mapped[str] = mapped_column(String(255), default="")
    city: Mapped[str] = mapped_column(String(100), default="")
    postal_code: Mapped[str] = mapped_column(String(20), default="")
    country: Mapped[str] = mapped_column(String(2), default="IN")


# =============================================================================
# CARTS
# =============================================================================

class CartModel(Base):
    __tablename__ = "carts"

    cart_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class CartItemModel(Base):
    """
    Cart Item Table

    Each row holds ``quantity`` units of reservation on its variant.
    ``version`` is the compare-and-swap token for concurrent edits.
    """
    __tablename__ = "cart_items"

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cart_id: Mapped[str] = mapped_column(ForeignKey("carts.cart_id", ondelete="CASCADE"), nullable=False)
    variant_id: Mapped[str] = mapped_column(ForeignKey("inventory_records.variant_id"), nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("cart_id", "variant_id", name="uq_cart_items_cart_variant"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
        Index("ix_cart_items_expires_at", "expires_at"),
    )


# =============================================================================
# ORDERS
# =============================================================================

class OrderModel(Base):
    """
    Orders Table

    Created from a cart snapshot. ``inventory_state`` tracks whether the
    lines are still held, committed, released, or awaiting reconciliation.
    """
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    shipping_address_id: Mapped[str] = mapped_column(String(64), nullable=False)
    billing_address_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING
    )
    order_status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.CREATED
    )
    inventory_state: Mapped[InventoryState] = mapped_column(
        _enum(InventoryState, "inventory_state"), nullable=False, default=InventoryState.HELD
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    payment_reference: Mapped[Optional[str]] = mapped_column(String(128))
    failure_reason: Mapped[Optional[str]] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    items: Mapped[List["OrderItemModel"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItemModel.line_no",
    )

    __table_args__ = (
        Index("ix_orders_pending_created", "payment_status", "inventory_state", "created_at"),
    )


class OrderItemModel(Base):
    __tablename__ = "order_items"

    order_id: Mapped[str] = mapped_column(
        ForeignKey("orders.order_id", ondelete="CASCADE"), primary_key=True
    )
    line_no: Mapped[int] = mapped_column(Integer, primary_key=True)
    variant_id: Mapped[str] = mapped_column(ForeignKey("inventory_records.variant_id"), nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order: Mapped["OrderModel"] = relationship(back_populates="items")


class OrderSequenceModel(Base):
    """Named monotonic counters (one row per sequence)"""
    __tablename__ = "order_sequences"

    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)


# =============================================================================
# WEBHOOKS
# =============================================================================

class WebhookEventModel(Base):
    """
    Webhook Dedup Table

    The composite primary key makes the claim an atomic insert-if-absent.
    """
    __tablename__ = "webhook_events"

    provider: Mapped[str] = mapped_column(String(20), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[WebhookStatus] = mapped_column(
        _enum(WebhookStatus, "webhook_status"), nullable=False, default=WebhookStatus.PROCESSING
    )
    result: Mapped[Optional[dict]] = mapped_column(JSON)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
