"""Dependency injection for services."""
from typing import Optional
import httpx
from fastapi import Request

from services.checkout_service import CheckoutService
from services.discount_service import DiscountService
from services.inventory_service import InventoryService
from services.notification_service import NotificationClient


def get_http_client(request: Request) -> Optional[httpx.AsyncClient]:
    """Get HTTP client from app state."""
    return getattr(request.app.state, "http_client", None)


def get_inventory_service() -> InventoryService:
    """Get inventory service instance."""
    return InventoryService()


def get_discount_service() -> DiscountService:
    """Get discount service instance."""
    return DiscountService()


def get_notification_client(request: Request) -> Optional[NotificationClient]:
    """Get notification client, or None when no HTTP client is configured."""
    http_client = get_http_client(request)
    if http_client is None:
        return None
    return NotificationClient(http_client)


def get_checkout_service(request: Request) -> CheckoutService:
    """Get checkout service instance."""
    return CheckoutService(
        inventory_service=get_inventory_service(),
        discount_service=get_discount_service(),
        notification_client=get_notification_client(request),
    )
