"""Per-entity repositories over a SQLAlchemy session.

Services depend on these narrow read/write operations instead of issuing
queries directly. Stock and coupon-usage counters are only ever changed through
the conditional single-statement primitives below, so the check and the write
happen inside the store.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from models import CheckoutAttempt, Coupon, Order, OrderItem, Product, utcnow

logger = logging.getLogger(__name__)


class ProductRepository:
    """Reads products and moves stock."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, product_id: str) -> Optional[Product]:
        return self.db.get(Product, product_id)

    def get_many(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = list(set(product_ids))
        if not ids:
            return {}
        products = self.db.scalars(select(Product).where(Product.id.in_(ids))).all()
        return {product.id: product for product in products}

    def decrement_stock_if_sufficient(self, product_id: str, quantity: int) -> bool:
        """
        Decrement stock by quantity only if enough is on hand.

        Returns:
            True if the row was updated, False if stock was insufficient
            or the product does not exist
        """
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= quantity)
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def increment_stock(self, product_id: str, quantity: int) -> bool:
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_low_stock(self, threshold: int) -> List[Product]:
        return list(self.db.scalars(
            select(Product)
            .where(Product.stock_quantity < threshold, Product.stock_quantity > 0)
            .order_by(Product.stock_quantity, Product.name)
        ).all())

    def list_out_of_stock(self) -> List[Product]:
        return list(self.db.scalars(
            select(Product)
            .where(Product.stock_quantity == 0)
            .order_by(Product.name)
        ).all())


class CouponRepository:
    """Reads coupons and claims coupon uses."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, coupon_id: str) -> Optional[Coupon]:
        return self.db.get(Coupon, coupon_id)

    def get_by_code(self, code: str) -> Optional[Coupon]:
        return self.db.scalars(
            select(Coupon).where(Coupon.code == code.strip().upper())
        ).first()

    def add(self, coupon: Coupon) -> Coupon:
        self.db.add(coupon)
        self.db.flush()
        return coupon

    def list_active(self, now: datetime) -> List[Coupon]:
        return list(self.db.scalars(
            select(Coupon)
            .where(
                Coupon.is_active.is_(True),
                or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
                or_(Coupon.start_date.is_(None), Coupon.start_date <= now),
                or_(Coupon.end_date.is_(None), Coupon.end_date > now),
            )
            .order_by(Coupon.created_at.desc())
        ).all())

    def increment_usage_if_available(self, coupon_id: str) -> bool:
        """
        Claim one use of a coupon.

        Returns:
            True if the counter was incremented, False if the usage limit
            is already reached or the coupon does not exist
        """
        result = self.db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
            )
            .values(usage_count=Coupon.usage_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_usage(self, coupon_id: str) -> bool:
        """Give back a use claimed by an order that was rolled back."""
        result = self.db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.usage_count > 0)
            .values(usage_count=Coupon.usage_count - 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class OrderRepository:
    """Reads, inserts and deletes order headers."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, order_id: str) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def add(self, order: Order) -> Order:
        self.db.add(order)
        self.db.flush()
        return order

    def delete(self, order_id: str) -> bool:
        result = self.db.execute(
            delete(Order)
            .where(Order.id == order_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class OrderItemRepository:
    """Inserts and reads order line items."""

    def __init__(self, db: Session):
        self.db = db

    def add_all(self, items: List[OrderItem]) -> List[OrderItem]:
        self.db.add_all(items)
        self.db.flush()
        return items

    def list_for_order(self, order_id: str) -> List[OrderItem]:
        return list(self.db.scalars(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        ).all())

    def delete_for_order(self, order_id: str) -> int:
        result = self.db.execute(
            delete(OrderItem)
            .where(OrderItem.order_id == order_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class CheckoutAttemptRepository:
    """Idempotency keys and the per-attempt stage log."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, idempotency_key: str) -> Optional[CheckoutAttempt]:
        return self.db.scalars(
            select(CheckoutAttempt).where(CheckoutAttempt.idempotency_key == idempotency_key)
        ).first()

    def create(self, idempotency_key: str, session_id: str) -> CheckoutAttempt:
        """Insert a new attempt. Raises IntegrityError if the key exists."""
        attempt = CheckoutAttempt(
            idempotency_key=idempotency_key,
            session_id=session_id,
            status="in_progress",
            stage="started",
        )
        self.db.add(attempt)
        self.db.commit()
        return attempt

    def restart(self, attempt: CheckoutAttempt) -> CheckoutAttempt:
        attempt.status = "in_progress"
        attempt.stage = "started"
        attempt.failed_stage = None
        attempt.order_id = None
        attempt.coupon_id = None
        attempt.message = None
        attempt.warnings = None
        attempt.notification_sent = False
        self.db.commit()
        return attempt

    def mark_stage(
        self,
        attempt: CheckoutAttempt,
        stage: str,
        order_id: Optional[str] = None,
        coupon_id: Optional[str] = None,
        commit: bool = True,
    ) -> None:
        attempt.stage = stage
        if order_id is not None:
            attempt.order_id = order_id
        if coupon_id is not None:
            attempt.coupon_id = coupon_id
        if commit:
            self.db.commit()

    def mark_failed(
        self,
        attempt: CheckoutAttempt,
        failed_stage: str,
        message: str,
        clear_order: bool = False,
    ) -> None:
        attempt.status = "failed"
        attempt.stage = "failed"
        attempt.failed_stage = failed_stage
        attempt.message = message
        if clear_order:
            attempt.order_id = None
            attempt.coupon_id = None
        self.db.commit()

    def mark_completed(
        self,
        attempt: CheckoutAttempt,
        warnings: Optional[List[str]] = None,
        notification_sent: bool = False,
    ) -> None:
        """Close the attempt, keeping what a replay of it has to return."""
        attempt.status = "completed"
        attempt.warnings = list(warnings or [])
        attempt.notification_sent = notification_sent
        self.db.commit()

    def list_stalled(self, older_than: timedelta) -> List[CheckoutAttempt]:
        """Attempts still in progress, or failed with an order on record."""
        cutoff = utcnow() - older_than
        return list(self.db.scalars(
            select(CheckoutAttempt)
            .where(
                CheckoutAttempt.updated_at < cutoff,
                or_(
                    CheckoutAttempt.status == "in_progress",
                    (CheckoutAttempt.status == "failed") & CheckoutAttempt.order_id.isnot(None),
                ),
            )
            .order_by(CheckoutAttempt.updated_at)
        ).all())
