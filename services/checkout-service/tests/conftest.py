"""Pytest fixtures for checkout service tests."""

import os

# Must be set before any service module reads config
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("SEED_DATABASE", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, Coupon, Product


@pytest.fixture
def session_factory():
    """In-memory database shared by every session opened in one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    """Database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_product(db):
    """Insert a product and return it."""

    def _make(product_id, price, stock, name=None, allow_backorders=False):
        product = Product(
            id=product_id,
            name=name or product_id,
            price=Decimal(str(price)),
            stock_quantity=stock,
            allow_backorders=allow_backorders,
        )
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def make_coupon(db):
    """Insert a coupon and return it."""

    def _make(code, discount_type="percentage", discount_value=10, **kwargs):
        kwargs.setdefault("minimum_order_amount", Decimal("0"))
        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(str(discount_value)),
            **kwargs,
        )
        db.add(coupon)
        db.commit()
        return coupon

    return _make


@pytest.fixture
def stock_of(db):
    """Read current stock straight from the store."""

    def _read(product_id):
        db.expire_all()
        return db.get(Product, product_id).stock_quantity

    return _read


@pytest.fixture
def usage_of(db):
    """Read current coupon usage straight from the store."""

    def _read(coupon_id):
        db.expire_all()
        return db.get(Coupon, coupon_id).usage_count

    return _read
