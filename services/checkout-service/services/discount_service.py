"""Discount code validation and application."""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from opentelemetry import trace

from errors import NotFoundError, PersistenceError, ValidationFailedError
from models import Coupon, as_utc, utcnow
from repositories import CouponRepository, OrderRepository
from services.totals import Amount, assemble_order_totals
from monitoring import coupon_rejections_counter, coupon_redemptions_counter

logger = logging.getLogger(__name__)

PERCENTAGE = "percentage"
FIXED = "fixed"


@dataclass
class DiscountValidationResult:
    """Outcome of validating a coupon code against a subtotal."""
    valid: bool
    discount_amount: Decimal
    message: str
    coupon: Optional[Coupon] = None
    reason: Optional[str] = None


def compute_discount(discount_type: str, value: Amount, subtotal: Amount) -> Decimal:
    """
    Discount for a subtotal.

    Percentage coupons take value percent of the subtotal; fixed coupons
    never discount more than the subtotal.
    """
    value = Decimal(str(value))
    subtotal = Decimal(str(subtotal))
    if discount_type == PERCENTAGE:
        return subtotal * value / Decimal(100)
    return min(value, subtotal)


class DiscountService:
    """Service for validating and redeeming coupon codes."""

    def __init__(self):
        self.tracer = trace.get_tracer(__name__)

    def validate(
        self,
        db: Session,
        code: str,
        subtotal: Amount,
        now: Optional[datetime] = None
    ) -> DiscountValidationResult:
        """
        Validate a coupon code against an order subtotal.

        Checks run in a fixed order and the first failing one decides the
        message: existence, active flag, start date, end date, usage limit,
        minimum order amount.

        Args:
            db: Database session
            code: Code as typed by the customer
            subtotal: Order subtotal before discount, tax and shipping
            now: Evaluation time, defaults to the current UTC time

        Returns:
            Validation result with the discount amount when valid
        """
        now = as_utc(now) if now is not None else utcnow()
        subtotal = Decimal(str(subtotal))
        normalized = code.strip().upper()

        with self.tracer.start_as_current_span("discount.validate") as span:
            span.set_attribute("coupon.code", normalized)

            coupon = CouponRepository(db).get_by_code(normalized) if normalized else None
            result = self._evaluate(coupon, subtotal, now)

            span.set_attribute("coupon.valid", result.valid)
            if not result.valid:
                coupon_rejections_counter.add(1, {"reason": result.reason})
                logger.info("Discount code rejected", extra={
                    "coupon_code": normalized,
                    "reason": result.reason,
                    "subtotal": str(subtotal),
                })
            return result

    @staticmethod
    def _evaluate(coupon: Optional[Coupon], subtotal: Decimal, now: datetime) -> DiscountValidationResult:
        def reject(reason: str, message: str) -> DiscountValidationResult:
            return DiscountValidationResult(
                valid=False,
                discount_amount=Decimal("0"),
                message=message,
                coupon=coupon,
                reason=reason,
            )

        if coupon is None:
            return DiscountValidationResult(
                valid=False,
                discount_amount=Decimal("0"),
                message="Invalid discount code",
                reason="invalid_code",
            )

        if not coupon.is_active:
            return reject("not_active", "This discount code is not active")

        if coupon.start_date is not None and as_utc(coupon.start_date) > now:
            return reject("not_yet_active", "This discount code is not yet active")

        if coupon.end_date is not None and as_utc(coupon.end_date) < now:
            return reject(
                "expired",
                f"This discount code expired on {as_utc(coupon.end_date):%Y-%m-%d}",
            )

        if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
            return reject("limit_reached", "This discount code has reached its usage limit")

        minimum = Decimal(str(coupon.minimum_order_amount or 0))
        if subtotal < minimum:
            return reject(
                "minimum_not_met",
                f"This discount code requires a minimum order of ${minimum:.2f}",
            )

        return DiscountValidationResult(
            valid=True,
            discount_amount=compute_discount(coupon.discount_type, coupon.discount_value, subtotal),
            message=f"Discount applied: {coupon.description or coupon.code}",
            coupon=coupon,
        )

    def apply(
        self,
        db: Session,
        order_id: str,
        coupon_id: str,
        discount_amount: Amount,
        commit: bool = True
    ) -> None:
        """
        Record a validated discount on an order and claim one coupon use.

        The usage claim and the order update happen in the same transaction:
        either both are committed or neither is.

        Args:
            db: Database session
            order_id: Order to discount
            coupon_id: Coupon being redeemed
            discount_amount: Amount returned by validate()
            commit: Commit here; pass False to let the caller own the transaction

        Raises:
            NotFoundError: If the order or coupon does not exist
            ValidationFailedError: If the coupon has no uses left
            PersistenceError: If the store fails
        """
        with self.tracer.start_as_current_span("discount.apply") as span:
            span.set_attribute("order.id", order_id)
            span.set_attribute("coupon.id", coupon_id)

            try:
                order = OrderRepository(db).get(order_id)
                if order is None:
                    raise NotFoundError("order", order_id)
                coupons = CouponRepository(db)
                coupon = coupons.get(coupon_id)
                if coupon is None:
                    raise NotFoundError("coupon", coupon_id)

                if not coupons.increment_usage_if_available(coupon_id):
                    if commit:
                        db.rollback()
                    coupon_rejections_counter.add(1, {"reason": "limit_reached"})
                    raise ValidationFailedError("This discount code has reached its usage limit")

                totals = assemble_order_totals(
                    order.subtotal, discount_amount, order.tax_amount, order.shipping_amount
                )
                order.coupon_id = coupon.id
                order.coupon_code = coupon.code
                order.discount_amount = totals.discount_amount
                order.total_amount = totals.total_amount
                order.updated_at = utcnow()
                db.flush()

                if commit:
                    db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to apply discount to order", extra={
                    "order_id": order_id,
                    "coupon_id": coupon_id,
                    "error": str(e),
                })
                raise PersistenceError("apply discount to order", str(e)) from e

            coupon_redemptions_counter.add(1, {"coupon_code": coupon.code})
            logger.info("Applied discount to order", extra={
                "order_id": order_id,
                "coupon_code": coupon.code,
                "discount_amount": str(totals.discount_amount),
            })

    def get_active_coupons(self, db: Session, now: Optional[datetime] = None) -> List[Coupon]:
        """Coupons that are active, inside their window and not exhausted, newest first."""
        return CouponRepository(db).list_active(as_utc(now) if now is not None else utcnow())

    def create_coupon(
        self,
        db: Session,
        code: str,
        discount_type: str,
        discount_value: Amount,
        description: Optional[str] = None,
        minimum_order_amount: Amount = 0,
        is_active: bool = True,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        usage_limit: Optional[int] = None
    ) -> Coupon:
        """
        Create a coupon. Codes are stored upper-case.

        Raises:
            ValidationFailedError: If the code already exists or the values are inconsistent
            PersistenceError: If the store fails
        """
        normalized = code.strip().upper()
        value = Decimal(str(discount_value))
        if discount_type not in (PERCENTAGE, FIXED):
            raise ValidationFailedError(f"Unknown discount type '{discount_type}'")
        if value <= 0:
            raise ValidationFailedError("Discount value must be greater than zero")
        if discount_type == PERCENTAGE and value > 100:
            raise ValidationFailedError("Percentage discounts cannot exceed 100")
        # Naive datetimes are UTC
        start_date = as_utc(start_date) if start_date else None
        end_date = as_utc(end_date) if end_date else None
        if start_date and end_date and end_date <= start_date:
            raise ValidationFailedError("Coupon end date must be after its start date")

        coupons = CouponRepository(db)
        if coupons.get_by_code(normalized) is not None:
            raise ValidationFailedError(f"Discount code {normalized} already exists")

        try:
            coupon = coupons.add(Coupon(
                code=normalized,
                description=description,
                discount_type=discount_type,
                discount_value=value,
                minimum_order_amount=Decimal(str(minimum_order_amount)),
                is_active=is_active,
                start_date=start_date,
                end_date=end_date,
                usage_limit=usage_limit,
                usage_count=0,
            ))
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ValidationFailedError(f"Discount code {normalized} already exists") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create coupon", extra={"coupon_code": normalized, "error": str(e)})
            raise PersistenceError("create coupon", str(e)) from e

        logger.info("Created coupon", extra={"coupon_code": normalized, "discount_type": discount_type})
        return coupon
