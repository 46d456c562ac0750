"""Database models for the checkout service."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


class Product(Base):
    """Product model."""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, index=True, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    allow_backorders = Column(Boolean, nullable=False, default=False)
    estimated_restock_date = Column(DateTime(timezone=True), nullable=True)
    category = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Coupon(Base):
    """Discount coupon model."""
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(64), unique=True, index=True, nullable=False)
    description = Column(String, nullable=True)
    discount_type = Column(String(16), nullable=False)  # percentage | fixed
    discount_value = Column(Numeric(10, 2), nullable=False)
    minimum_order_amount = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Order(Base):
    """Order header model."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    subtotal = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(6, 4), nullable=False, default=0)
    shipping_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    coupon_id = Column(String(36), ForeignKey("coupons.id"), nullable=True)
    coupon_code = Column(String(64), nullable=True)
    shipping_full_name = Column(String)
    shipping_address = Column(String)
    shipping_address_line2 = Column(String, nullable=True)
    shipping_city = Column(String)
    shipping_state = Column(String)
    shipping_postal_code = Column(String)
    shipping_country = Column(String)
    shipping_method = Column(String)
    payment_method = Column(String)
    payment_status = Column(String, default="pending")
    status = Column(String, default="pending")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")

    @property
    def order_number(self) -> str:
        return self.id[:8].upper()


class OrderItem(Base):
    """Order line item; unit_price is the price captured at purchase time."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(String(36), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="items")


class CheckoutAttempt(Base):
    """One checkout attempt, keyed by its idempotency key.

    Records the last stage reached so stalled or partially committed attempts
    can be found and reconciled.
    """
    __tablename__ = "checkout_attempts"

    id = Column(Integer, primary_key=True, index=True)
    idempotency_key = Column(String(128), unique=True, index=True, nullable=False)
    session_id = Column(String, index=True)
    status = Column(String(16), nullable=False, default="in_progress")
    stage = Column(String(32), nullable=False, default="started")
    failed_stage = Column(String(32), nullable=True)
    order_id = Column(String(36), nullable=True)
    coupon_id = Column(String(36), nullable=True)
    message = Column(Text, nullable=True)
    warnings = Column(JSON, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
