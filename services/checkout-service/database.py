"""Database connection and session management."""
from datetime import timedelta
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator
import logging

from config import DATABASE_URL, SEED_DATABASE
from models import Base, Coupon, Product, utcnow

logger = logging.getLogger(__name__)


def build_engine(url: str):
    """Create an engine with pool settings suited to the backend."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,
        pool_timeout=30,
    )


engine = build_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def seed_catalog(db: Session) -> None:
    """Insert sample products and coupons."""
    products = [
        Product(id="ginger-honey", name="Ginger Honey", price=Decimal("12.50"),
                stock_quantity=40, category="Honey"),
        Product(id="wildflower-honey", name="Wildflower Honey", price=Decimal("9.99"),
                stock_quantity=120, category="Honey"),
        Product(id="spiced-dates", name="Spiced Dates", price=Decimal("7.25"),
                stock_quantity=8, category="Dry Fruits"),
        Product(id="saffron-almonds", name="Saffron Almonds", price=Decimal("18.00"),
                stock_quantity=0, allow_backorders=True,
                estimated_restock_date=utcnow() + timedelta(days=14), category="Dry Fruits"),
        Product(id="gift-box-classic", name="Classic Gift Box", price=Decimal("45.00"),
                stock_quantity=15, category="Gift Boxes"),
    ]
    coupons = [
        Coupon(code="SAVE10", description="10% off orders over $20",
               discount_type="percentage", discount_value=Decimal("10"),
               minimum_order_amount=Decimal("20")),
        Coupon(code="WELCOME5", description="$5 off your first order",
               discount_type="fixed", discount_value=Decimal("5"),
               minimum_order_amount=Decimal("0"), usage_limit=500),
    ]
    db.add_all(products)
    db.add_all(coupons)
    db.commit()


def init_db() -> None:
    """Initialize database tables and seed data."""
    Base.metadata.create_all(bind=engine)

    if not SEED_DATABASE:
        return

    # Seed data if empty
    db = SessionLocal()
    try:
        if db.query(Product).count() == 0:
            seed_catalog(db)
            logger.info("Seeded database with sample products and coupons")
    finally:
        db.close()
