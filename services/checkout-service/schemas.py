"""Pydantic schemas for request/response validation."""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class CartLine(BaseModel):
    """Schema for a requested cart line."""
    product_id: str
    quantity: int = Field(gt=0)


class ShippingAddress(BaseModel):
    """Schema for a shipping address."""
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str


class CheckoutRequest(BaseModel):
    """Schema for checkout request."""
    session_id: str
    items: List[CartLine] = Field(min_length=1)
    shipping_address: ShippingAddress
    shipping_method: str = "standard"
    payment_method: str
    user_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    coupon_code: Optional[str] = None
    idempotency_key: Optional[str] = None


class OrderTotalsResponse(BaseModel):
    """Schema for order money components."""
    model_config = ConfigDict(from_attributes=True)

    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal


class CheckoutResponse(BaseModel):
    """Schema for checkout response."""
    message: str
    order_id: str
    order_number: str
    stage: str
    totals: OrderTotalsResponse
    warnings: List[str] = []
    notification_sent: bool
    replayed: bool = False


class CheckoutAttemptResponse(BaseModel):
    """Schema for a checkout attempt awaiting reconciliation."""
    model_config = ConfigDict(from_attributes=True)

    idempotency_key: str
    session_id: Optional[str] = None
    status: str
    stage: str
    failed_stage: Optional[str] = None
    order_id: Optional[str] = None
    coupon_id: Optional[str] = None
    message: Optional[str] = None
    updated_at: datetime


class InventoryCheckRequest(BaseModel):
    """Schema for inventory check request."""
    items: List[CartLine] = Field(min_length=1)


class InventoryCheckResponseItem(BaseModel):
    """Schema for a single line in an inventory check."""
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    product_name: Optional[str] = None
    quantity: int
    available: bool
    current_stock: int
    backorder_available: bool
    estimated_restock_date: Optional[datetime] = None


class InventoryCheckResponse(BaseModel):
    """Schema for inventory check response."""
    model_config = ConfigDict(from_attributes=True)

    success: bool
    available_items: List[InventoryCheckResponseItem]
    unavailable_items: List[InventoryCheckResponseItem]
    message: str


class ProductStockResponse(BaseModel):
    """Schema for product stock level."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price: Decimal
    stock_quantity: int
    allow_backorders: bool
    estimated_restock_date: Optional[datetime] = None


class CouponValidateRequest(BaseModel):
    """Schema for coupon validation request."""
    code: str
    subtotal: Decimal = Field(ge=0)


class CouponValidateResponse(BaseModel):
    """Schema for coupon validation response."""
    valid: bool
    discount_amount: Decimal
    message: str


class CouponCreate(BaseModel):
    """Schema for creating a coupon."""
    code: str = Field(min_length=1, max_length=64)
    description: Optional[str] = None
    discount_type: Literal["percentage", "fixed"]
    discount_value: Decimal = Field(gt=0)
    minimum_order_amount: Decimal = Field(default=Decimal("0"), ge=0)
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, gt=0)


class CouponResponse(BaseModel):
    """Schema for coupon response."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    minimum_order_amount: Decimal
    is_active: bool
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_count: int


class OrderItemResponse(BaseModel):
    """Schema for order line item."""
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    quantity: int
    unit_price: Decimal


class OrderResponse(BaseModel):
    """Schema for order response."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal
    coupon_code: Optional[str] = None
    shipping_method: Optional[str] = None
    payment_method: Optional[str] = None
    payment_status: str
    status: str
    created_at: datetime
    items: List[OrderItemResponse]
