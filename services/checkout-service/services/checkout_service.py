"""Order placement: sequences inventory, discount, order, items, settlement and notification."""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from opentelemetry import trace

from config import IDEMPOTENCY_WINDOW_SECONDS, NOTIFICATION_MAX_ATTEMPTS
from errors import (
    DuplicateCheckoutError,
    NotFoundError,
    PartialCommitError,
    PersistenceError,
    ValidationFailedError,
)
from models import CheckoutAttempt, Order, OrderItem, new_id, utcnow
from repositories import (
    CheckoutAttemptRepository,
    CouponRepository,
    OrderItemRepository,
    OrderRepository,
    ProductRepository,
)
from schemas import CheckoutRequest
from services.discount_service import DiscountService, DiscountValidationResult
from services.inventory_service import InventoryCheck, InventoryService, StockRequest
from services.notification_service import NotificationClient
from services.pricing_policy import assess_tax, shipping_amount_for
from services.totals import OrderTotals, assemble_order_totals, calculate_subtotal, to_money
from monitoring import (
    checkout_counter,
    checkout_amount_histogram,
    duplicate_checkout_counter,
    notification_failures_counter,
)

logger = logging.getLogger(__name__)


class CheckoutStage(str, Enum):
    STARTED = "started"
    INVENTORY_CHECKED = "inventory_checked"
    DISCOUNT_APPLIED = "discount_applied"
    ORDER_CREATED = "order_created"
    ITEMS_CREATED = "items_created"
    INVENTORY_SETTLED = "inventory_settled"
    NOTIFIED = "notified"
    FAILED = "failed"


# FAILED is reachable from every non-terminal stage and is not listed here
ALLOWED_TRANSITIONS = {
    CheckoutStage.STARTED: {CheckoutStage.INVENTORY_CHECKED},
    CheckoutStage.INVENTORY_CHECKED: {CheckoutStage.DISCOUNT_APPLIED, CheckoutStage.ORDER_CREATED},
    CheckoutStage.DISCOUNT_APPLIED: {CheckoutStage.ORDER_CREATED},
    CheckoutStage.ORDER_CREATED: {CheckoutStage.ITEMS_CREATED},
    CheckoutStage.ITEMS_CREATED: {CheckoutStage.INVENTORY_SETTLED},
    CheckoutStage.INVENTORY_SETTLED: {CheckoutStage.NOTIFIED},
}

TERMINAL_STAGES = {CheckoutStage.NOTIFIED, CheckoutStage.FAILED}


class CheckoutState:
    """Stage tracker for a single checkout attempt."""

    def __init__(self):
        self.stage = CheckoutStage.STARTED
        self.completed: List[CheckoutStage] = [CheckoutStage.STARTED]
        self.failed_stage: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def advance(self, stage: CheckoutStage) -> None:
        if stage not in ALLOWED_TRANSITIONS.get(self.stage, set()):
            raise RuntimeError(f"Illegal checkout transition {self.stage.value} -> {stage.value}")
        self.stage = stage
        self.completed.append(stage)

    def fail(self, failed_stage: str) -> None:
        if self.terminal:
            raise RuntimeError(f"Checkout already ended in {self.stage.value}")
        self.stage = CheckoutStage.FAILED
        self.failed_stage = failed_stage

    def completed_names(self) -> List[str]:
        return [stage.value for stage in self.completed]


@dataclass
class CheckoutResult:
    """Outcome of a checkout attempt returned to the caller."""
    success: bool
    stage: CheckoutStage
    message: str = ""
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    totals: Optional[OrderTotals] = None
    warnings: List[str] = field(default_factory=list)
    failed_stage: Optional[str] = None
    unavailable_items: List[InventoryCheck] = field(default_factory=list)
    notification_sent: bool = False
    replayed: bool = False


def merge_lines(lines: Sequence[StockRequest]) -> List[StockRequest]:
    """Combine repeated product lines, keeping first-seen order."""
    merged: Dict[str, int] = {}
    for product_id, quantity in lines:
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


def derive_idempotency_key(
    session_id: str,
    lines: Sequence[StockRequest],
    now: Optional[datetime] = None,
    window_seconds: int = IDEMPOTENCY_WINDOW_SECONDS
) -> str:
    """
    Key a checkout by cart session, cart contents and time window.

    Resubmitting the same cart from the same session inside one window yields
    the same key.
    """
    now = now or utcnow()
    bucket = int(now.timestamp()) // max(window_seconds, 1)
    cart = ",".join(f"{product_id}:{quantity}" for product_id, quantity in sorted(merge_lines(lines)))
    digest = hashlib.sha256(f"{session_id}|{cart}|{bucket}".encode("utf-8")).hexdigest()
    return f"checkout-{digest[:48]}"


class CheckoutService:
    """Service for placing orders from a cart."""

    def __init__(
        self,
        inventory_service: InventoryService,
        discount_service: DiscountService,
        notification_client: Optional[NotificationClient] = None,
        notification_max_attempts: int = NOTIFICATION_MAX_ATTEMPTS
    ):
        """
        Initialize checkout service.

        Args:
            inventory_service: Inventory ledger service
            discount_service: Coupon service
            notification_client: Sender for order confirmations; None disables them
            notification_max_attempts: Sends tried before a confirmation is dropped
        """
        self.inventory_service = inventory_service
        self.discount_service = discount_service
        self.notification_client = notification_client
        self.notification_max_attempts = max(notification_max_attempts, 1)
        self.tracer = trace.get_tracer(__name__)

    async def place_order(
        self,
        db: Session,
        request: CheckoutRequest,
        now: Optional[datetime] = None
    ) -> CheckoutResult:
        """
        Place an order for the cart in the request.

        Stock and coupon problems come back as a structured result. Failures
        persisting the order or its items abort the checkout and raise.
        Settlement and notification problems after the order exists are
        logged and returned as warnings.

        Args:
            db: Database session
            request: Checkout request
            now: Evaluation time for coupon windows and idempotency windows

        Returns:
            Checkout result

        Raises:
            ValidationFailedError: If the shipping method is unknown
            DuplicateCheckoutError: If the same checkout is already running
            PersistenceError: If the store failed while reading the cart or
                storing the order or its items
            PartialCommitError: If a failed checkout could not be rolled back
        """
        now = now or utcnow()
        lines = merge_lines([(line.product_id, line.quantity) for line in request.items])
        shipping_amount = shipping_amount_for(request.shipping_method)
        key = request.idempotency_key or derive_idempotency_key(request.session_id, lines, now)

        span = trace.get_current_span()
        span.set_attribute("checkout.idempotency_key", key)
        span.set_attribute("checkout.line_count", len(lines))

        attempt, replay = self._begin_attempt(db, key, request.session_id)
        if replay is not None:
            return replay

        state = CheckoutState()
        warnings: List[str] = []

        # Stage 1: inventory
        try:
            with self.tracer.start_as_current_span("checkout.inventory_check"):
                availability = self.inventory_service.check_availability(db, lines)
                products = ProductRepository(db).get_many(product_id for product_id, _ in lines)
        except SQLAlchemyError as e:
            raise self._abort_before_order(
                db, attempt, state, request, "inventory", "check inventory", e
            ) from e
        if not availability.success:
            state.fail("inventory")
            self._record_failure(db, attempt, "inventory", availability.message)
            checkout_counter.add(1, {"outcome": "failed", "failed_stage": "inventory"})
            return CheckoutResult(
                success=False,
                stage=state.stage,
                message=availability.message,
                failed_stage="inventory",
                unavailable_items=availability.unavailable_items,
            )
        state.advance(CheckoutStage.INVENTORY_CHECKED)
        self._mark_stage(db, attempt, CheckoutStage.INVENTORY_CHECKED)

        unit_prices = {product_id: to_money(product.price) for product_id, product in products.items()}
        product_names = {product_id: product.name for product_id, product in products.items()}
        subtotal = calculate_subtotal((unit_prices[product_id], quantity) for product_id, quantity in lines)

        # Stage 2: discount (soft failure)
        validation: Optional[DiscountValidationResult] = None
        if request.coupon_code and request.coupon_code.strip():
            try:
                with self.tracer.start_as_current_span("checkout.discount"):
                    validation = self.discount_service.validate(db, request.coupon_code, subtotal, now=now)
            except SQLAlchemyError as e:
                raise self._abort_before_order(
                    db, attempt, state, request, "discount", "validate discount code", e
                ) from e
            if validation.valid:
                state.advance(CheckoutStage.DISCOUNT_APPLIED)
                self._mark_stage(db, attempt, CheckoutStage.DISCOUNT_APPLIED)
            else:
                warnings.append(validation.message)

        address = request.shipping_address
        tax = assess_tax(subtotal, address.country, address.state, address.postal_code)
        tax_rate, tax_amount = tax.rate, tax.amount
        if tax.components:
            span.set_attribute("checkout.tax_system", tax.system)
            logger.info("Split tax into components", extra={
                "session_id": request.session_id,
                "tax_system": tax.system,
                "components": {name: str(amount) for name, amount in tax.components.items()},
            })

        # Stage 3: order header, with the coupon claim in the same transaction
        with self.tracer.start_as_current_span("checkout.create_order") as order_span:
            order_id, coupon_id = self._create_order(
                db, attempt, state, request, subtotal, tax_amount, tax_rate,
                shipping_amount, validation, warnings
            )
            order_span.set_attribute("order.id", order_id)
        state.advance(CheckoutStage.ORDER_CREATED)

        # Stage 4: order items
        with self.tracer.start_as_current_span("checkout.create_items"):
            self._create_items(db, attempt, state, order_id, coupon_id, lines, unit_prices)
        state.advance(CheckoutStage.ITEMS_CREATED)

        order = OrderRepository(db).get(order_id)
        totals = assemble_order_totals(
            order.subtotal, order.discount_amount, order.tax_amount, order.shipping_amount
        )
        order_number = order.order_number
        coupon_code = order.coupon_code

        # Stage 5: inventory settlement (best effort)
        with self.tracer.start_as_current_span("checkout.settle_inventory"):
            warnings.extend(self._settle_inventory(db, order_id, product_names))
        state.advance(CheckoutStage.INVENTORY_SETTLED)
        self._mark_stage(db, attempt, CheckoutStage.INVENTORY_SETTLED)

        # Stage 6: confirmation (best effort, never fails the checkout)
        notification_sent = False
        if request.customer_email:
            with self.tracer.start_as_current_span("checkout.notify"):
                notification_sent = await self._notify(
                    request, order_id, order_number, coupon_code, totals, lines, unit_prices, product_names
                )
        state.advance(CheckoutStage.NOTIFIED)
        self._complete(db, attempt, warnings, notification_sent)

        checkout_counter.add(1, {"outcome": "completed", "failed_stage": "none"})
        checkout_amount_histogram.record(float(totals.total_amount), {
            "payment_method": request.payment_method,
            "coupon": "yes" if coupon_id else "no",
        })
        logger.info("Checkout completed", extra={
            "order_id": order_id,
            "session_id": request.session_id,
            "total_amount": str(totals.total_amount),
            "discount_amount": str(totals.discount_amount),
            "item_count": len(lines),
            "warning_count": len(warnings),
        })

        return CheckoutResult(
            success=True,
            stage=state.stage,
            message="Order placed successfully",
            order_id=order_id,
            order_number=order_number,
            totals=totals,
            warnings=warnings,
            notification_sent=notification_sent,
        )

    def _begin_attempt(
        self,
        db: Session,
        key: str,
        session_id: str
    ) -> Tuple[Optional[CheckoutAttempt], Optional[CheckoutResult]]:
        """Claim the idempotency key, or replay/reject a known attempt."""
        attempts = CheckoutAttemptRepository(db)
        existing = attempts.get_by_key(key)

        if existing is not None:
            if existing.status == "completed" and existing.order_id:
                duplicate_checkout_counter.add(1, {"outcome": "replayed"})
                logger.info("Replaying completed checkout", extra={
                    "idempotency_key": key,
                    "order_id": existing.order_id,
                })
                return None, self._replay(db, existing)
            if existing.status == "in_progress":
                duplicate_checkout_counter.add(1, {"outcome": "rejected"})
                logger.warning("Duplicate checkout submission rejected", extra={
                    "idempotency_key": key,
                    "stage": existing.stage,
                })
                raise DuplicateCheckoutError(key)
            if existing.order_id:
                # A rolled-back order that could not be cleaned up; retrying would orphan it
                raise PartialCommitError(existing.order_id, [], existing.failed_stage or "unknown")
            logger.info("Restarting failed checkout attempt", extra={
                "idempotency_key": key,
                "failed_stage": existing.failed_stage,
            })
            return attempts.restart(existing), None

        try:
            return attempts.create(key, session_id), None
        except IntegrityError as e:
            db.rollback()
            duplicate_checkout_counter.add(1, {"outcome": "rejected"})
            raise DuplicateCheckoutError(key) from e

    def _abort_before_order(
        self,
        db: Session,
        attempt: CheckoutAttempt,
        state: CheckoutState,
        request: CheckoutRequest,
        failed_stage: str,
        operation: str,
        error: SQLAlchemyError
    ) -> PersistenceError:
        """Close out an attempt whose store read failed before any order was written.

        The attempt is marked failed so a retry with the same key restarts it.
        """
        db.rollback()
        state.fail(failed_stage)
        self._record_failure(db, attempt, failed_stage, f"Could not {operation}: {error}")
        checkout_counter.add(1, {"outcome": "failed", "failed_stage": failed_stage})
        logger.error("Checkout aborted by store failure", extra={
            "session_id": request.session_id,
            "failed_stage": failed_stage,
            "error": str(error),
        })
        return PersistenceError(operation, str(error))

    def _replay(self, db: Session, attempt: CheckoutAttempt) -> CheckoutResult:
        order = OrderRepository(db).get(attempt.order_id)
        if order is None:
            raise NotFoundError("order", attempt.order_id)
        return CheckoutResult(
            success=True,
            stage=CheckoutStage.NOTIFIED,
            message="Order already placed",
            order_id=order.id,
            order_number=order.order_number,
            totals=assemble_order_totals(
                order.subtotal, order.discount_amount, order.tax_amount, order.shipping_amount
            ),
            warnings=list(attempt.warnings or []),
            notification_sent=bool(attempt.notification_sent),
            replayed=True,
        )

    def _create_order(
        self,
        db: Session,
        attempt: CheckoutAttempt,
        state: CheckoutState,
        request: CheckoutRequest,
        subtotal: Decimal,
        tax_amount: Decimal,
        tax_rate: Decimal,
        shipping_amount: Decimal,
        validation: Optional[DiscountValidationResult],
        warnings: List[str]
    ) -> Tuple[str, Optional[str]]:
        """Persist the order header and claim the coupon. Returns (order_id, coupon_id)."""
        address = request.shipping_address
        base_totals = assemble_order_totals(subtotal, 0, tax_amount, shipping_amount)
        coupon_id = None

        try:
            order = OrderRepository(db).add(Order(
                id=new_id(),
                user_id=request.user_id,
                customer_email=request.customer_email,
                customer_name=request.customer_name or address.full_name,
                subtotal=base_totals.subtotal,
                discount_amount=base_totals.discount_amount,
                tax_amount=base_totals.tax_amount,
                tax_rate=tax_rate,
                shipping_amount=base_totals.shipping_amount,
                total_amount=base_totals.total_amount,
                shipping_full_name=address.full_name,
                shipping_address=address.address_line1,
                shipping_address_line2=address.address_line2,
                shipping_city=address.city,
                shipping_state=address.state,
                shipping_postal_code=address.postal_code,
                shipping_country=address.country,
                shipping_method=request.shipping_method,
                payment_method=request.payment_method,
                payment_status="pending",
                status="pending",
            ))
            order_id = order.id

            if validation is not None and validation.valid:
                try:
                    self.discount_service.apply(
                        db, order_id, validation.coupon.id, validation.discount_amount, commit=False
                    )
                    coupon_id = validation.coupon.id
                except ValidationFailedError as e:
                    # Another order took the last use between validation and now
                    warnings.append(e.reason)

            CheckoutAttemptRepository(db).mark_stage(
                attempt, CheckoutStage.ORDER_CREATED.value,
                order_id=order_id, coupon_id=coupon_id, commit=False
            )
            db.commit()
        except (SQLAlchemyError, PersistenceError) as e:
            db.rollback()
            state.fail("order")
            message = "We could not create your order. Please try again."
            self._record_failure(db, attempt, "order", f"{message} ({e})")
            checkout_counter.add(1, {"outcome": "failed", "failed_stage": "order"})
            logger.error("Failed to create order", extra={
                "session_id": request.session_id,
                "subtotal": str(subtotal),
                "error": str(e),
            })
            raise PersistenceError("create order", str(e)) from e

        return order_id, coupon_id

    def _create_items(
        self,
        db: Session,
        attempt: CheckoutAttempt,
        state: CheckoutState,
        order_id: str,
        coupon_id: Optional[str],
        lines: Sequence[StockRequest],
        unit_prices: Dict[str, Decimal]
    ) -> None:
        """Persist all line items in one batch, rolling the order back if that fails."""
        try:
            OrderItemRepository(db).add_all([
                OrderItem(
                    order_id=order_id,
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=unit_prices[product_id],
                )
                for product_id, quantity in lines
            ])
            CheckoutAttemptRepository(db).mark_stage(
                attempt, CheckoutStage.ITEMS_CREATED.value, commit=False
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            completed = state.completed_names()
            state.fail("items")
            checkout_counter.add(1, {"outcome": "failed", "failed_stage": "items"})
            logger.error("Failed to create order items", extra={
                "order_id": order_id,
                "error": str(e),
            })
            self._compensate_order(db, attempt, order_id, coupon_id, completed)
            raise PersistenceError("create order items", str(e)) from e

    def _compensate_order(
        self,
        db: Session,
        attempt: CheckoutAttempt,
        order_id: str,
        coupon_id: Optional[str],
        completed: List[str]
    ) -> None:
        """Delete an orphaned order header and release its coupon use."""
        try:
            OrderItemRepository(db).delete_for_order(order_id)
            OrderRepository(db).delete(order_id)
            if coupon_id:
                CouponRepository(db).release_usage(coupon_id)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.critical("Failed to roll back orphaned order", extra={
                "order_id": order_id,
                "coupon_id": coupon_id,
                "completed_stages": completed,
                "error": str(e),
            })
            self._record_failure(db, attempt, "items", f"Order {order_id} needs reconciliation: {e}")
            raise PartialCommitError(order_id, completed, "items") from e

        logger.warning("Rolled back order after item creation failed", extra={
            "order_id": order_id,
            "coupon_id": coupon_id,
        })
        self._record_failure(
            db, attempt, "items", "We could not save your order items. Please try again.",
            clear_order=True
        )

    def _settle_inventory(
        self,
        db: Session,
        order_id: str,
        product_names: Dict[str, str]
    ) -> List[str]:
        """Decrement stock for the order. Returns customer-facing warnings."""
        try:
            settlement = self.inventory_service.settle_after_order(db, order_id)
        except (PersistenceError, NotFoundError) as e:
            logger.error("Inventory settlement failed after order creation", extra={
                "order_id": order_id,
                "error": str(e),
            })
            return ["Your order is placed, but stock could not be updated yet. "
                    "We will confirm availability shortly."]

        if settlement.shortfalls:
            names = [product_names.get(product_id, product_id) for product_id, _ in settlement.shortfalls]
            return [f"These items sold out while you checked out and may ship late: {', '.join(names)}"]
        return []

    async def _notify(
        self,
        request: CheckoutRequest,
        order_id: str,
        order_number: str,
        coupon_code: Optional[str],
        totals: OrderTotals,
        lines: Sequence[StockRequest],
        unit_prices: Dict[str, Decimal],
        product_names: Dict[str, str]
    ) -> bool:
        """Send the order confirmation, retrying a bounded number of times."""
        if self.notification_client is None:
            return False

        subject = f"Order Confirmation #{order_number}"
        context = build_confirmation_context(
            request, order_number, coupon_code, totals, lines, unit_prices, product_names
        )

        for attempt_number in range(1, self.notification_max_attempts + 1):
            try:
                if await self.notification_client.send(request.customer_email, subject, context):
                    logger.info("Sent order confirmation", extra={
                        "order_id": order_id,
                        "attempt": attempt_number,
                    })
                    return True
            except Exception as e:
                logger.error("Order confirmation raised", extra={
                    "order_id": order_id,
                    "attempt": attempt_number,
                    "error": str(e),
                })

        notification_failures_counter.add(1, {"reason": "retries_exhausted"})
        logger.error("Dropped order confirmation after retries", extra={
            "order_id": order_id,
            "attempts": self.notification_max_attempts,
        })
        return False

    def _mark_stage(self, db: Session, attempt: CheckoutAttempt, stage: CheckoutStage) -> None:
        try:
            CheckoutAttemptRepository(db).mark_stage(attempt, stage.value)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to record checkout stage", extra={
                "idempotency_key": attempt.idempotency_key,
                "stage": stage.value,
                "error": str(e),
            })

    def _complete(
        self,
        db: Session,
        attempt: CheckoutAttempt,
        warnings: List[str],
        notification_sent: bool
    ) -> None:
        try:
            attempts = CheckoutAttemptRepository(db)
            attempts.mark_stage(attempt, CheckoutStage.NOTIFIED.value, commit=False)
            attempts.mark_completed(attempt, warnings, notification_sent)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to record completed checkout", extra={
                "idempotency_key": attempt.idempotency_key,
                "error": str(e),
            })

    def _record_failure(
        self,
        db: Session,
        attempt: CheckoutAttempt,
        failed_stage: str,
        message: str,
        clear_order: bool = False
    ) -> None:
        try:
            CheckoutAttemptRepository(db).mark_failed(attempt, failed_stage, message, clear_order)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to record checkout failure", extra={
                "idempotency_key": attempt.idempotency_key,
                "failed_stage": failed_stage,
                "error": str(e),
            })


def build_confirmation_context(
    request: CheckoutRequest,
    order_number: str,
    coupon_code: Optional[str],
    totals: OrderTotals,
    lines: Sequence[StockRequest],
    unit_prices: Dict[str, Decimal],
    product_names: Dict[str, str]
) -> Dict[str, Any]:
    """Finished order summary handed to the notification template."""
    address = request.shipping_address
    return {
        "order_number": order_number,
        "customer_name": request.customer_name or address.full_name,
        "items": [
            {
                "product_id": product_id,
                "product_name": product_names.get(product_id, product_id),
                "quantity": quantity,
                "unit_price": str(unit_prices[product_id]),
                "line_total": str(to_money(unit_prices[product_id] * quantity)),
            }
            for product_id, quantity in lines
        ],
        "subtotal": str(totals.subtotal),
        "discount_amount": str(totals.discount_amount),
        "tax_amount": str(totals.tax_amount),
        "shipping_amount": str(totals.shipping_amount),
        "total_amount": str(totals.total_amount),
        "coupon_code": coupon_code,
        "shipping_method": request.shipping_method,
        "payment_method": request.payment_method,
        "shipping_address": {
            "full_name": address.full_name,
            "address_line1": address.address_line1,
            "address_line2": address.address_line2,
            "city": address.city,
            "state": address.state,
            "postal_code": address.postal_code,
            "country": address.country,
        },
    }
