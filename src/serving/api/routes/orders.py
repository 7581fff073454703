"""
Orders API Endpoints

Checkout, order lookup, customer cancellation and fulfilment transitions.
"""

from fastapi import APIRouter, Depends, status

from src.serving.api.dependencies import (
    ServiceContainer,
    get_container,
    get_current_user,
    require_admin,
)
from src.serving.api.schemas import CheckoutRequest, OrderResponse

router = APIRouter()


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def place_order(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    """
    Convert the caller's cart into an order.

    The cart's reservations move to the order; the cart is left empty.
    """
    order = await container.checkout.checkout(
        user_id,
        body.shipping_address_id,
        body.billing_address_id,
        body.payment_method,
    )
    return OrderResponse.from_order(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    user_id: str = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.checkout.get_order(user_id, order_id)
    return OrderResponse.from_order(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    user_id: str = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.checkout.cancel(user_id, order_id)
    return OrderResponse.from_order(order)


@router.post("/{order_id}/ship", response_model=OrderResponse)
async def ship_order(
    order_id: str,
    _: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.checkout.ship(order_id)
    return OrderResponse.from_order(order)


@router.post("/{order_id}/deliver", response_model=OrderResponse)
async def deliver_order(
    order_id: str,
    _: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> OrderResponse:
    order = await container.checkout.deliver(order_id)
    return OrderResponse.from_order(order)
