"""
Cart API Endpoints

Every edit is a reservation change against the inventory ledger.
"""

from fastapi import APIRouter, Depends

from src.common.errors import (
    InsufficientStock,
    InvalidQuantity,
    RecordNotFound,
    TransientStorageError,
)
from src.inventory.reservation import ReservationResult, ReservationStatus
from src.serving.api.dependencies import ServiceContainer, get_container, get_current_user
from src.serving.api.schemas import AddCartItemRequest, CartResponse, UpdateCartItemRequest

router = APIRouter()


def _raise_unless_accepted(result: ReservationResult, not_found: str) -> None:
    if result.status == ReservationStatus.ACCEPTED:
        return
    if result.status == ReservationStatus.INSUFFICIENT_STOCK:
        raise InsufficientStock(available_qty=result.available_qty)
    if result.status == ReservationStatus.NOT_FOUND:
        raise RecordNotFound(not_found)
    if result.status == ReservationStatus.INVALID_QUANTITY:
        raise InvalidQuantity()
    raise TransientStorageError()


async def _current_cart(container: ServiceContainer, user_id: str) -> CartResponse:
    cart = await container.repository.get_or_create_cart(user_id)
    return CartResponse.from_cart(cart)


@router.get("", response_model=CartResponse)
async def get_cart(
    user_id: str = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> CartResponse:
    return await _current_cart(container, user_id)


@router.post("/items", response_model=CartResponse)
async def add_cart_item(
    body: AddCartItemRequest,
    user_id: str = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> CartResponse:
    """
    Add a variant to the cart, reserving the quantity.

    Adding a variant already in the cart grows that line.
    """
    cart = await container.repository.get_or_create_cart(user_id)
    result = await container.reservations.reserve(body.product_variant_id, body.quantity, cart.cart_id)
    _raise_unless_accepted(result, "Product variant not found")
    return await _current_cart(container, user_id)


@router.patch("/items/{item_id}", response_model=CartResponse)
async def update_cart_item(
    item_id: str,
    body: UpdateCartItemRequest,
    user_id: str = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> CartResponse:
    cart = await container.repository.get_or_create_cart(user_id)
    result = await container.reservations.update_quantity(cart.cart_id, item_id, body.quantity)
    _raise_unless_accepted(result, "Cart item not found")
    return await _current_cart(container, user_id)


@router.delete("/items/{item_id}", response_model=CartResponse)
async def remove_cart_item(
    item_id: str,
    user_id: str = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> CartResponse:
    cart = await container.repository.get_or_create_cart(user_id)
    result = await container.reservations.remove_item(cart.cart_id, item_id)
    _raise_unless_accepted(result, "Cart item not found")
    return await _current_cart(container, user_id)
