"""
Inventory API Endpoints

Ledger inspection and stock level administration.
"""

from fastapi import APIRouter, Depends

from src.common.errors import RecordNotFound
from src.serving.api.dependencies import ServiceContainer, get_container, require_admin
from src.serving.api.schemas import InventoryResponse, SetStockRequest

router = APIRouter()


@router.get("/{variant_id}", response_model=InventoryResponse)
async def get_inventory(
    variant_id: str,
    container: ServiceContainer = Depends(get_container),
) -> InventoryResponse:
    record = await container.repository.get_inventory(variant_id)
    if record is None:
        raise RecordNotFound("Inventory record not found", variant_id=variant_id)
    return InventoryResponse.from_record(record)


@router.put("/{variant_id}", response_model=InventoryResponse)
async def set_stock(
    variant_id: str,
    body: SetStockRequest,
    _: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> InventoryResponse:
    """
    Set on-hand stock for a variant.

    Returns 409 when the new level is below what is already reserved.
    """
    if await container.repository.get_variant(variant_id) is None:
        raise RecordNotFound("Product variant not found", variant_id=variant_id)
    record = await container.repository.set_stock(variant_id, body.stock_qty)
    return InventoryResponse.from_record(record)
