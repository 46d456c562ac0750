"""Inventory API router."""
from typing import List
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from opentelemetry import trace

from config import LOW_STOCK_THRESHOLD
from database import get_db
from dependencies import get_inventory_service
from schemas import InventoryCheckRequest, InventoryCheckResponse, ProductStockResponse
from services.inventory_service import InventoryService

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.post("/check", response_model=InventoryCheckResponse)
async def check_inventory(
    request: InventoryCheckRequest,
    db: Session = Depends(get_db),
    inventory_service: InventoryService = Depends(get_inventory_service)
):
    """Report whether every cart line can be covered by current stock."""
    items = [(line.product_id, line.quantity) for line in request.items]
    return inventory_service.check_availability(db, items)


@router.get("/low-stock", response_model=List[ProductStockResponse])
async def get_low_stock(
    threshold: int = Query(LOW_STOCK_THRESHOLD, gt=0, description="Stock level below which a product counts as low"),
    db: Session = Depends(get_db),
    inventory_service: InventoryService = Depends(get_inventory_service)
):
    """Products in stock but below the threshold."""
    products = inventory_service.get_low_stock_products(db, threshold)

    span = trace.get_current_span()
    span.set_attribute("inventory.low_stock_count", len(products))
    span.set_attribute("inventory.threshold", threshold)

    return products


@router.get("/out-of-stock", response_model=List[ProductStockResponse])
async def get_out_of_stock(
    db: Session = Depends(get_db),
    inventory_service: InventoryService = Depends(get_inventory_service)
):
    """Products with no stock on hand."""
    return inventory_service.get_out_of_stock_products(db)
