"""Inventory ledger: availability checks, reservation and settlement."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from opentelemetry import trace

from config import LOW_STOCK_THRESHOLD
from errors import InsufficientStockError, NotFoundError, PersistenceError
from models import Product
from repositories import OrderItemRepository, OrderRepository, ProductRepository
from monitoring import (
    inventory_unavailable_counter,
    inventory_settlement_shortfalls_counter,
    reservation_conflicts_counter,
)

logger = logging.getLogger(__name__)

# (product_id, quantity)
StockRequest = Tuple[str, int]


@dataclass
class InventoryCheck:
    """Availability of a single requested line."""
    product_id: str
    quantity: int
    available: bool
    current_stock: int
    backorder_available: bool
    product_name: Optional[str] = None
    estimated_restock_date: Optional[datetime] = None


@dataclass
class InventoryCheckResult:
    """Partition of requested lines into available and unavailable."""
    success: bool
    available_items: List[InventoryCheck] = field(default_factory=list)
    unavailable_items: List[InventoryCheck] = field(default_factory=list)
    message: str = ""


@dataclass
class SettlementResult:
    """Outcome of decrementing stock for a persisted order."""
    order_id: str
    settled: List[StockRequest] = field(default_factory=list)
    shortfalls: List[StockRequest] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.shortfalls


class InventoryService:
    """Service for reading and moving product stock."""

    def __init__(self):
        self.tracer = trace.get_tracer(__name__)

    def check_availability(
        self,
        db: Session,
        items: Sequence[StockRequest]
    ) -> InventoryCheckResult:
        """
        Check that every requested line can be covered by current stock.

        Args:
            db: Database session
            items: (product_id, quantity) pairs

        Returns:
            Availability partition with a message naming unavailable products
        """
        with self.tracer.start_as_current_span("inventory.check_availability") as span:
            span.set_attribute("inventory.line_count", len(items))

            products = ProductRepository(db).get_many(product_id for product_id, _ in items)
            checks = [self._check_line(products.get(product_id), product_id, quantity)
                      for product_id, quantity in items]

            available = [check for check in checks if check.available]
            unavailable = [check for check in checks if not check.available]
            success = not unavailable

            message = ""
            if not success:
                names = [check.product_name or check.product_id for check in unavailable]
                message = (
                    "The following items are not available in the requested quantities: "
                    + ", ".join(names)
                )
                for check in unavailable:
                    inventory_unavailable_counter.add(1, {"product_id": check.product_id})
                logger.info("Inventory check found unavailable items", extra={
                    "unavailable_product_ids": [check.product_id for check in unavailable],
                })

            span.set_attribute("inventory.unavailable_count", len(unavailable))
            return InventoryCheckResult(
                success=success,
                available_items=available,
                unavailable_items=unavailable,
                message=message,
            )

    @staticmethod
    def _check_line(product: Optional[Product], product_id: str, quantity: int) -> InventoryCheck:
        if product is None:
            return InventoryCheck(
                product_id=product_id,
                quantity=quantity,
                available=False,
                current_stock=0,
                backorder_available=False,
            )
        return InventoryCheck(
            product_id=product_id,
            quantity=quantity,
            available=product.stock_quantity >= quantity,
            current_stock=product.stock_quantity,
            backorder_available=bool(product.allow_backorders),
            product_name=product.name,
            estimated_restock_date=product.estimated_restock_date,
        )

    def reserve(self, db: Session, items: Sequence[StockRequest]) -> bool:
        """
        Decrement stock for every line, or for none of them.

        The availability check runs first; each decrement is then a
        conditional store-side update and all of them share one transaction,
        so a concurrent reservation that takes the stock in between rolls
        this one back entirely.

        Returns:
            True if all lines were reserved
        """
        with self.tracer.start_as_current_span("inventory.reserve") as span:
            span.set_attribute("inventory.line_count", len(items))

            check = self.check_availability(db, items)
            if not check.success:
                span.set_attribute("inventory.reserved", False)
                return False

            products = ProductRepository(db)
            try:
                for product_id, quantity in items:
                    if not products.decrement_stock_if_sufficient(product_id, quantity):
                        raise InsufficientStockError([product_id])
                db.commit()
            except InsufficientStockError as e:
                db.rollback()
                reservation_conflicts_counter.add(1, {"product_id": e.product_ids[0]})
                logger.warning("Reservation lost a stock race and was rolled back", extra={
                    "product_ids": e.product_ids,
                })
                span.set_attribute("inventory.reserved", False)
                return False
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to reserve inventory", extra={"error": str(e)})
                span.set_attribute("inventory.reserved", False)
                return False

            span.set_attribute("inventory.reserved", True)
            logger.info("Reserved inventory", extra={
                "items": [{"product_id": p, "quantity": q} for p, q in items],
            })
            return True

    def settle_after_order(self, db: Session, order_id: str) -> SettlementResult:
        """
        Decrement stock from the line items of a persisted order.

        Lines whose stock no longer covers them are reported as shortfalls;
        stock is never driven negative.

        Raises:
            NotFoundError: If the order does not exist
            PersistenceError: If the store fails
        """
        with self.tracer.start_as_current_span("inventory.settle_after_order") as span:
            span.set_attribute("order.id", order_id)

            try:
                if OrderRepository(db).get(order_id) is None:
                    raise NotFoundError("order", order_id)

                result = SettlementResult(order_id=order_id)
                products = ProductRepository(db)
                for item in OrderItemRepository(db).list_for_order(order_id):
                    line = (item.product_id, item.quantity)
                    if products.decrement_stock_if_sufficient(item.product_id, item.quantity):
                        result.settled.append(line)
                    else:
                        result.shortfalls.append(line)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to settle inventory for order", extra={
                    "order_id": order_id,
                    "error": str(e),
                })
                raise PersistenceError("settle inventory", str(e)) from e

            for product_id, quantity in result.shortfalls:
                inventory_settlement_shortfalls_counter.add(1, {"product_id": product_id})
                logger.warning("Insufficient stock to settle order line", extra={
                    "order_id": order_id,
                    "product_id": product_id,
                    "quantity": quantity,
                })

            span.set_attribute("inventory.shortfall_count", len(result.shortfalls))
            return result

    def get_low_stock_products(
        self,
        db: Session,
        threshold: int = LOW_STOCK_THRESHOLD
    ) -> List[Product]:
        """Products that are in stock but below the threshold."""
        return ProductRepository(db).list_low_stock(threshold)

    def get_out_of_stock_products(self, db: Session) -> List[Product]:
        return ProductRepository(db).list_out_of_stock()
