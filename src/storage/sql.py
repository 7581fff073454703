"""
SQL Repository

SQLAlchemy async implementation of the storage ports. Every port call is one
transaction. Ledger writes are single guarded UPDATE statements:

    UPDATE inventory_records
       SET reserved_qty = reserved_qty + :q, version = version + 1
     WHERE variant_id = :v AND stock_qty - reserved_qty >= :q

so concurrent requests never read-modify-write a counter across round trips.
Connection-level failures surface as TransientStorageError.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.common.errors import (
    ConcurrentModification,
    InvariantViolation,
    OrderNumberTaken,
    TransientStorageError,
)
from src.database.models import (
    AddressModel,
    CartItemModel,
    CartModel,
    CatalogVariantModel,
    InventoryRecordModel,
    OrderItemModel,
    OrderModel,
    OrderSequenceModel,
    WebhookEventModel,
)
from src.storage.base import (
    HOLDING_STATES,
    Address,
    Cart,
    CartItem,
    CatalogVariant,
    ChangeOutcome,
    FinalizeOutcome,
    InventoryRecord,
    InventoryState,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Repository,
    ReservationSnapshot,
    WebhookEvent,
    WebhookStatus,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

ORDER_SEQUENCE = "order_number"

_INVENTORY_COLUMNS = (
    InventoryRecordModel.variant_id,
    InventoryRecordModel.stock_qty,
    InventoryRecordModel.reserved_qty,
    InventoryRecordModel.version,
    InventoryRecordModel.updated_at,
)


# =============================================================================
# ROW MAPPING
# =============================================================================

def _to_inventory(row: Any) -> InventoryRecord:
    return InventoryRecord(
        variant_id=row.variant_id,
        stock_qty=row.stock_qty,
        reserved_qty=row.reserved_qty,
        version=row.version,
        updated_at=row.updated_at,
    )


def _to_cart_item(row: CartItemModel) -> CartItem:
    return CartItem(
        item_id=row.item_id,
        cart_id=row.cart_id,
        variant_id=row.variant_id,
        sku=row.sku,
        quantity=row.quantity,
        unit_price=Decimal(row.unit_price),
        version=row.version,
        reserved_at=row.reserved_at,
        expires_at=row.expires_at,
    )


def _to_order(row: OrderModel) -> Order:
    return Order(
        order_id=row.order_id,
        order_number=row.order_number,
        user_id=row.user_id,
        items=[
            OrderItem(
                variant_id=line.variant_id,
                sku=line.sku,
                quantity=line.quantity,
                unit_price=Decimal(line.unit_price),
                line_total=Decimal(line.line_total),
            )
            for line in row.items
        ],
        shipping_address_id=row.shipping_address_id,
        billing_address_id=row.billing_address_id,
        payment_method=row.payment_method,
        subtotal=Decimal(row.subtotal),
        grand_total=Decimal(row.grand_total),
        currency=row.currency,
        payment_status=PaymentStatus(row.payment_status),
        order_status=OrderStatus(row.order_status),
        inventory_state=InventoryState(row.inventory_state),
        payment_reference=row.payment_reference,
        failure_reason=row.failure_reason,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_event(row: WebhookEventModel) -> WebhookEvent:
    return WebhookEvent(
        provider=row.provider,
        event_id=row.event_id,
        event_type=row.event_type,
        payload_hash=row.payload_hash,
        status=WebhookStatus(row.status),
        result=row.result,
        received_at=row.received_at,
        expires_at=row.expires_at,
    )


class SqlRepository(Repository):
    """
    Repository over an async SQLAlchemy session factory.

    Example:
        repo = SqlRepository(build_session_factory(engine))
        outcome, record = await repo.reserve_atomic("var-1", 3)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError) as e:
            logger.warning("storage_unavailable", error=str(e), error_type=type(e).__name__)
            raise TransientStorageError(str(e.orig) if e.orig else str(e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                logger.warning("storage_connection_invalidated", error=str(e))
                raise TransientStorageError("connection invalidated") from e
            raise

    # =========================================================================
    # SEEDING
    # =========================================================================

    async def add_variant(self, variant: CatalogVariant) -> CatalogVariant:
        async with self._transaction() as session:
            await session.merge(CatalogVariantModel(
                variant_id=variant.variant_id,
                sku=variant.sku,
                name=variant.name,
                unit_price=variant.unit_price,
                active=variant.active,
            ))
        return variant

    async def add_address(self, address: Address) -> Address:
        async with self._transaction() as session:
            await session.merge(AddressModel(
                address_id=address.address_id,
                user_id=address.user_id,
                line1=address.line1,
                city=address.city,
                postal_code=address.postal_code,
                country=address.country,
            ))
        return address

    # =========================================================================
    # COLLABORATORS
    # =========================================================================

    async def get_variant(self, variant_id: str) -> Optional[CatalogVariant]:
        async with self._transaction() as session:
            row = await session.get(CatalogVariantModel, variant_id)
            if row is None:
                return None
            return CatalogVariant(
                variant_id=row.variant_id,
                sku=row.sku,
                name=row.name,
                unit_price=Decimal(row.unit_price),
                active=row.active,
            )

    async def owns(self, user_id: str, address_id: str) -> bool:
        async with self._transaction() as session:
            found = await session.scalar(
                select(AddressModel.address_id).where(
                    AddressModel.address_id == address_id,
                    AddressModel.user_id == user_id,
                )
            )
            return found is not None

    # =========================================================================
    # LEDGER STATEMENTS
    # =========================================================================

    async def _reserve(self, session: AsyncSession, variant_id: str, quantity: int) -> Tuple[ChangeOutcome, Optional[InventoryRecord]]:
        t = InventoryRecordModel
        stmt = (
            update(t)
            .where(t.variant_id == variant_id, t.stock_qty - t.reserved_qty >= quantity)
            .values(reserved_qty=t.reserved_qty + quantity, version=t.version + 1, updated_at=utcnow())
            .returning(*_INVENTORY_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).one_or_none()
        if row is not None:
            return ChangeOutcome.APPLIED, _to_inventory(row)
        current = await self._read_inventory(session, variant_id)
        if current is None:
            return ChangeOutcome.NOT_FOUND, None
        return ChangeOutcome.INSUFFICIENT_STOCK, current

    async def _release(self, session: AsyncSession, variant_id: str, quantity: int) -> Tuple[ChangeOutcome, Optional[InventoryRecord]]:
        t = InventoryRecordModel
        stmt = (
            update(t)
            .where(t.variant_id == variant_id)
            .values(
                reserved_qty=case((t.reserved_qty >= quantity, t.reserved_qty - quantity), else_=0),
                version=t.version + 1,
                updated_at=utcnow(),
            )
            .returning(*_INVENTORY_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).one_or_none()
        if row is None:
            return ChangeOutcome.NOT_FOUND, None
        return ChangeOutcome.APPLIED, _to_inventory(row)

    async def _read_inventory(self, session: AsyncSession, variant_id: str) -> Optional[InventoryRecord]:
        row = (await session.execute(
            select(*_INVENTORY_COLUMNS).where(InventoryRecordModel.variant_id == variant_id)
        )).one_or_none()
        return _to_inventory(row) if row is not None else None

    # =========================================================================
    # INVENTORY
    # =========================================================================

    async def get_inventory(self, variant_id: str) -> Optional[InventoryRecord]:
        async with self._transaction() as session:
            return await self._read_inventory(session, variant_id)

    async def set_stock(self, variant_id: str, stock_qty: int) -> InventoryRecord:
        if stock_qty < 0:
            raise InvariantViolation("stock_qty must be >= 0", variant_id=variant_id)
        t = InventoryRecordModel
        async with self._transaction() as session:
            row = (await session.execute(
                update(t)
                .where(t.variant_id == variant_id, t.reserved_qty <= stock_qty)
                .values(stock_qty=stock_qty, version=t.version + 1, updated_at=utcnow())
                .returning(*_INVENTORY_COLUMNS)
                .execution_options(synchronize_session=False)
            )).one_or_none()
            if row is not None:
                return _to_inventory(row)

            current = await self._read_inventory(session, variant_id)
            if current is not None:
                raise InvariantViolation(
                    "stock_qty cannot drop below reserved_qty",
                    variant_id=variant_id,
                    reserved_qty=current.reserved_qty,
                )
            session.add(t(variant_id=variant_id, stock_qty=stock_qty, reserved_qty=0, version=0, updated_at=utcnow()))
            await session.flush()
            return InventoryRecord(variant_id=variant_id, stock_qty=stock_qty)

    async def reserve_atomic(self, variant_id: str, quantity: int) -> Tuple[ChangeOutcome, Optional[InventoryRecord]]:
        async with self._transaction() as session:
            return await self._reserve(session, variant_id, quantity)

    async def release_atomic(self, variant_id: str, quantity: int) -> Tuple[ChangeOutcome, Optional[InventoryRecord]]:
        async with self._transaction() as session:
            return await self._release(session, variant_id, quantity)

    async def commit_order_atomic(self, order_id: str, payment_reference: Optional[str]) -> Tuple[FinalizeOutcome, Optional[Order]]:
        values: Dict[str, Any] = {
            "payment_status": PaymentStatus.PAID,
            "inventory_state": InventoryState.COMMITTED,
            "failure_reason": None,
            "version": OrderModel.version + 1,
            "updated_at": utcnow(),
        }
        if payment_reference:
            values["payment_reference"] = payment_reference

        async with self._transaction() as session:
            claimed = await session.execute(
                update(OrderModel)
                .where(OrderModel.order_id == order_id, OrderModel.inventory_state.in_(HOLDING_STATES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                order = await self._load_order(session, order_id)
                if order is None:
                    return FinalizeOutcome.NOT_FOUND, None
                if order.inventory_state == InventoryState.COMMITTED:
                    return FinalizeOutcome.NOOP, order
                return FinalizeOutcome.REJECTED, order

            t = InventoryRecordModel
            lines = (await session.scalars(
                select(OrderItemModel).where(OrderItemModel.order_id == order_id)
            )).all()
            for line in lines:
                moved = await session.execute(
                    update(t)
                    .where(
                        t.variant_id == line.variant_id,
                        t.reserved_qty >= line.quantity,
                        t.stock_qty >= line.quantity,
                    )
                    .values(
                        stock_qty=t.stock_qty - line.quantity,
                        reserved_qty=t.reserved_qty - line.quantity,
                        version=t.version + 1,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    # Raising rolls back the order claim as well
                    raise InvariantViolation(
                        "held quantity missing from ledger",
                        order_id=order_id,
                        variant_id=line.variant_id,
                    )
            return FinalizeOutcome.APPLIED, await self._load_order(session, order_id)

    async def release_order_atomic(
        self,
        order_id: str,
        payment_status: PaymentStatus,
        reason: str,
    ) -> Tuple[FinalizeOutcome, Optional[Order]]:
        async with self._transaction() as session:
            claimed = await session.execute(
                update(OrderModel)
                .where(OrderModel.order_id == order_id, OrderModel.inventory_state == InventoryState.HELD)
                .values(
                    payment_status=payment_status,
                    order_status=OrderStatus.CANCELLED,
                    inventory_state=InventoryState.RELEASED,
                    failure_reason=reason,
                    version=OrderModel.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                order = await self._load_order(session, order_id)
                if order is None:
                    return FinalizeOutcome.NOT_FOUND, None
                if order.inventory_state == InventoryState.RELEASED:
                    return FinalizeOutcome.NOOP, order
                return FinalizeOutcome.REJECTED, order

            lines = (await session.scalars(
                select(OrderItemModel).where(OrderItemModel.order_id == order_id)
            )).all()
            for line in lines:
                await self._release(session, line.variant_id, line.quantity)
            return FinalizeOutcome.APPLIED, await self._load_order(session, order_id)

    # =========================================================================
    # CARTS
    # =========================================================================

    async def get_or_create_cart(self, user_id: str) -> Cart:
        try:
            async with self._transaction() as session:
                cart = await session.scalar(select(CartModel).where(CartModel.user_id == user_id))
                if cart is None:
                    cart = CartModel(cart_id=new_id(), user_id=user_id, updated_at=utcnow())
                    session.add(cart)
                    await session.flush()
                return await self._load_cart(session, cart)
        except IntegrityError:
            # Lost the race to create it; the other writer's row is there now
            async with self._transaction() as session:
                cart = await session.scalar(select(CartModel).where(CartModel.user_id == user_id))
                return await self._load_cart(session, cart)

    async def _load_cart(self, session: AsyncSession, cart: CartModel) -> Cart:
        rows = (await session.scalars(
            select(CartItemModel)
            .where(CartItemModel.cart_id == cart.cart_id)
            .order_by(CartItemModel.reserved_at)
        )).all()
        return Cart(
            cart_id=cart.cart_id,
            user_id=cart.user_id,
            items=[_to_cart_item(row) for row in rows],
            updated_at=cart.updated_at,
        )

    async def get_cart_item(self, item_id: str) -> Optional[CartItem]:
        async with self._transaction() as session:
            row = await session.get(CartItemModel, item_id)
            return _to_cart_item(row) if row is not None else None

    async def find_cart_item(self, cart_id: str, variant_id: str) -> Optional[CartItem]:
        async with self._transaction() as session:
            row = await session.scalar(
                select(CartItemModel).where(
                    CartItemModel.cart_id == cart_id,
                    CartItemModel.variant_id == variant_id,
                )
            )
            return _to_cart_item(row) if row is not None else None

    async def insert_cart_item_atomic(self, item: CartItem) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        try:
            async with self._transaction() as session:
                existing = await session.scalar(
                    select(CartItemModel.item_id).where(
                        CartItemModel.cart_id == item.cart_id,
                        CartItemModel.variant_id == item.variant_id,
                    )
                )
                if existing is not None:
                    return ChangeOutcome.CONFLICT, None
                outcome, _ = await self._reserve(session, item.variant_id, item.quantity)
                if outcome != ChangeOutcome.APPLIED:
                    return outcome, None
                session.add(CartItemModel(
                    item_id=item.item_id,
                    cart_id=item.cart_id,
                    variant_id=item.variant_id,
                    sku=item.sku,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    version=item.version,
                    reserved_at=item.reserved_at,
                    expires_at=item.expires_at,
                ))
                await session.flush()
                return ChangeOutcome.APPLIED, item
        except IntegrityError:
            # Concurrent insert of the same variant won; the reservation rolled back
            return ChangeOutcome.CONFLICT, None

    async def resize_cart_item_atomic(
        self,
        item_id: str,
        expected_version: int,
        quantity: int,
        unit_price: Decimal,
        expires_at: datetime,
    ) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        try:
            async with self._transaction() as session:
                row = await session.get(CartItemModel, item_id)
                if row is None:
                    return ChangeOutcome.NOT_FOUND, None
                current = _to_cart_item(row)
                if current.version != expected_version:
                    return ChangeOutcome.CONFLICT, current

                delta = quantity - current.quantity
                if delta > 0:
                    outcome, _ = await self._reserve(session, current.variant_id, delta)
                    if outcome != ChangeOutcome.APPLIED:
                        return outcome, current
                elif delta < 0:
                    await self._release(session, current.variant_id, -delta)

                swapped = await session.execute(
                    update(CartItemModel)
                    .where(CartItemModel.item_id == item_id, CartItemModel.version == expected_version)
                    .values(
                        quantity=quantity,
                        unit_price=unit_price,
                        expires_at=expires_at,
                        version=CartItemModel.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if swapped.rowcount != 1:
                    raise ConcurrentModification(item_id=item_id)

                current.quantity = quantity
                current.unit_price = unit_price
                current.expires_at = expires_at
                current.version = expected_version + 1
                return ChangeOutcome.APPLIED, current
        except ConcurrentModification:
            return ChangeOutcome.CONFLICT, None

    async def remove_cart_item_atomic(self, item_id: str, expected_version: int) -> Tuple[ChangeOutcome, Optional[CartItem]]:
        try:
            async with self._transaction() as session:
                row = await session.get(CartItemModel, item_id)
                if row is None:
                    return ChangeOutcome.NOT_FOUND, None
                current = _to_cart_item(row)
                if current.version != expected_version:
                    return ChangeOutcome.CONFLICT, current

                deleted = await session.execute(
                    delete(CartItemModel)
                    .where(CartItemModel.item_id == item_id, CartItemModel.version == expected_version)
                    .execution_options(synchronize_session=False)
                )
                if deleted.rowcount != 1:
                    raise ConcurrentModification(item_id=item_id)
                await self._release(session, current.variant_id, current.quantity)
                return ChangeOutcome.APPLIED, current
        except ConcurrentModification:
            return ChangeOutcome.CONFLICT, None

    async def list_expired_cart_items(self, now: datetime, limit: int) -> List[CartItem]:
        async with self._transaction() as session:
            rows = (await session.scalars(
                select(CartItemModel)
                .where(CartItemModel.expires_at.is_not(None), CartItemModel.expires_at <= now)
                .order_by(CartItemModel.expires_at)
                .limit(limit)
            )).all()
            return [_to_cart_item(row) for row in rows]

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def _load_order(self, session: AsyncSession, order_id: str) -> Optional[Order]:
        row = await session.scalar(
            select(OrderModel)
            .where(OrderModel.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return _to_order(row) if row is not None else None

    async def next_order_sequence(self, start: int) -> int:
        t = OrderSequenceModel
        for _ in range(3):
            async with self._transaction() as session:
                value = await session.scalar(
                    update(t)
                    .where(t.name == ORDER_SEQUENCE)
                    .values(value=t.value + 1)
                    .returning(t.value)
                    .execution_options(synchronize_session=False)
                )
                if value is not None:
                    return value
            try:
                async with self._transaction() as session:
                    session.add(t(name=ORDER_SEQUENCE, value=start))
                    await session.flush()
                    return start
            except IntegrityError:
                continue
        raise TransientStorageError("could not allocate order sequence")

    async def create_order_atomic(self, order: Order, snapshot: Sequence[ReservationSnapshot]) -> Order:
        try:
            async with self._transaction() as session:
                for pinned in snapshot:
                    deleted = await session.execute(
                        delete(CartItemModel)
                        .where(CartItemModel.item_id == pinned.item_id, CartItemModel.version == pinned.version)
                        .execution_options(synchronize_session=False)
                    )
                    if deleted.rowcount != 1:
                        raise ConcurrentModification("cart changed during checkout", item_id=pinned.item_id)

                session.add(OrderModel(
                    order_id=order.order_id,
                    order_number=order.order_number,
                    user_id=order.user_id,
                    shipping_address_id=order.shipping_address_id,
                    billing_address_id=order.billing_address_id,
                    payment_method=order.payment_method,
                    payment_status=order.payment_status,
                    order_status=order.order_status,
                    inventory_state=order.inventory_state,
                    subtotal=order.subtotal,
                    grand_total=order.grand_total,
                    currency=order.currency,
                    version=order.version,
                    created_at=order.created_at,
                    updated_at=order.updated_at,
                    items=[
                        OrderItemModel(
                            line_no=index,
                            variant_id=line.variant_id,
                            sku=line.sku,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                            line_total=line.line_total,
                        )
                        for index, line in enumerate(order.items)
                    ],
                ))
                await session.flush()
        except IntegrityError as e:
            raise OrderNumberTaken(order_number=order.order_number) from e
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._transaction() as session:
            return await self._load_order(session, order_id)

    async def transition_order(
        self,
        order_id: str,
        expected_version: int,
        order_status: OrderStatus,
    ) -> Optional[Order]:
        async with self._transaction() as session:
            swapped = await session.execute(
                update(OrderModel)
                .where(OrderModel.order_id == order_id, OrderModel.version == expected_version)
                .values(order_status=order_status, version=OrderModel.version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                return None
            return await self._load_order(session, order_id)

    async def mark_refunded(self, order_id: str) -> Tuple[FinalizeOutcome, Optional[Order]]:
        async with self._transaction() as session:
            swapped = await session.execute(
                update(OrderModel)
                .where(OrderModel.order_id == order_id, OrderModel.payment_status == PaymentStatus.PAID)
                .values(payment_status=PaymentStatus.REFUNDED, version=OrderModel.version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            order = await self._load_order(session, order_id)
            if order is None:
                return FinalizeOutcome.NOT_FOUND, None
            if swapped.rowcount == 1:
                return FinalizeOutcome.APPLIED, order
            if order.payment_status == PaymentStatus.REFUNDED:
                return FinalizeOutcome.NOOP, order
            return FinalizeOutcome.REJECTED, order

    async def mark_commit_failed(self, order_id: str, reason: str, payment_reference: Optional[str]) -> Optional[Order]:
        values: Dict[str, Any] = {
            "inventory_state": InventoryState.COMMIT_FAILED,
            "failure_reason": reason[:255],
            "version": OrderModel.version + 1,
            "updated_at": utcnow(),
        }
        if payment_reference:
            values["payment_reference"] = payment_reference
        async with self._transaction() as session:
            flagged = await session.execute(
                update(OrderModel)
                .where(OrderModel.order_id == order_id, OrderModel.inventory_state.in_(HOLDING_STATES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if flagged.rowcount != 1:
                return None
            return await self._load_order(session, order_id)

    async def list_stale_orders(self, created_before: datetime, exempt_methods: Sequence[str], limit: int) -> List[Order]:
        stmt = (
            select(OrderModel)
            .where(
                OrderModel.payment_status == PaymentStatus.PENDING,
                OrderModel.inventory_state == InventoryState.HELD,
                OrderModel.created_at <= created_before,
            )
            .order_by(OrderModel.created_at)
            .limit(limit)
        )
        if exempt_methods:
            stmt = stmt.where(OrderModel.payment_method.not_in(list(exempt_methods)))
        async with self._transaction() as session:
            return [_to_order(row) for row in (await session.scalars(stmt)).all()]

    async def list_commit_failed_orders(self, limit: int) -> List[Order]:
        async with self._transaction() as session:
            rows = (await session.scalars(
                select(OrderModel)
                .where(OrderModel.inventory_state == InventoryState.COMMIT_FAILED)
                .order_by(OrderModel.updated_at)
                .limit(limit)
            )).all()
            return [_to_order(row) for row in rows]

    # =========================================================================
    # WEBHOOK EVENTS
    # =========================================================================

    async def insert_if_absent(self, event: WebhookEvent) -> Tuple[bool, WebhookEvent]:
        t = WebhookEventModel
        for _ in range(3):
            try:
                async with self._transaction() as session:
                    session.add(t(
                        provider=event.provider,
                        event_id=event.event_id,
                        event_type=event.event_type,
                        payload_hash=event.payload_hash,
                        status=event.status,
                        result=event.result,
                        received_at=event.received_at,
                        expires_at=event.expires_at,
                    ))
                    await session.flush()
                return True, event
            except IntegrityError:
                pass

            async with self._transaction() as session:
                row = await session.get(t, (event.provider, event.event_id))
                if row is None:
                    continue  # discarded between our insert and read
                existing = _to_event(row)
                if existing.expires_at is None or existing.expires_at > utcnow():
                    return False, existing
                await session.execute(
                    delete(t).where(
                        t.provider == event.provider,
                        t.event_id == event.event_id,
                        t.expires_at <= utcnow(),
                    )
                )
        raise TransientStorageError("could not claim webhook event", event_id=event.event_id)

    async def mark_processed(self, provider: str, event_id: str, result: Dict[str, Any]) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(WebhookEventModel)
                .where(WebhookEventModel.provider == provider, WebhookEventModel.event_id == event_id)
                .values(status=WebhookStatus.PROCESSED, result=result)
                .execution_options(synchronize_session=False)
            )

    async def discard(self, provider: str, event_id: str) -> None:
        async with self._transaction() as session:
            await session.execute(
                delete(WebhookEventModel).where(
                    WebhookEventModel.provider == provider,
                    WebhookEventModel.event_id == event_id,
                )
            )

    async def purge_before(self, cutoff: datetime) -> int:
        async with self._transaction() as session:
            purged = await session.execute(
                delete(WebhookEventModel).where(WebhookEventModel.received_at < cutoff)
            )
            return purged.rowcount or 0
