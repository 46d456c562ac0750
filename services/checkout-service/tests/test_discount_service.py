"""Tests for coupon validation and redemption."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from errors import NotFoundError, ValidationFailedError
from models import Order, new_id
from services.discount_service import DiscountService, compute_discount
from services.totals import assemble_order_totals

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service():
    return DiscountService()


@pytest.fixture
def make_order(db):
    def _make(subtotal="25.00", tax="2.50", shipping="0.00"):
        subtotal, tax, shipping = Decimal(subtotal), Decimal(tax), Decimal(shipping)
        order = Order(
            id=new_id(),
            subtotal=subtotal,
            discount_amount=Decimal("0"),
            tax_amount=tax,
            tax_rate=Decimal("0.10"),
            shipping_amount=shipping,
            total_amount=subtotal + tax + shipping,
        )
        db.add(order)
        db.commit()
        return order.id

    return _make


class TestComputeDiscount:
    def test_percentage(self):
        assert compute_discount("percentage", Decimal("10"), Decimal("25.00")) == Decimal("2.5")

    def test_fixed(self):
        assert compute_discount("fixed", Decimal("5"), Decimal("25.00")) == Decimal("5")

    def test_fixed_never_exceeds_subtotal(self):
        assert compute_discount("fixed", Decimal("50"), Decimal("12.00")) == Decimal("12.00")


class TestValidate:
    def test_valid_percentage_code(self, db, service, make_coupon):
        make_coupon("SAVE10", "percentage", 10, minimum_order_amount=Decimal("20"),
                    description="10% off")
        result = service.validate(db, "SAVE10", Decimal("25.00"), now=NOW)

        assert result.valid
        assert result.discount_amount == Decimal("2.5")
        assert result.message == "Discount applied: 10% off"
        assert result.coupon.code == "SAVE10"

    def test_message_falls_back_to_code(self, db, service, make_coupon):
        make_coupon("FLAT3", "fixed", 3)
        result = service.validate(db, "FLAT3", Decimal("10.00"), now=NOW)
        assert result.message == "Discount applied: FLAT3"

    def test_code_is_normalized(self, db, service, make_coupon):
        make_coupon("SAVE10", "percentage", 10)
        result = service.validate(db, "  save10 ", Decimal("25.00"), now=NOW)
        assert result.valid

    def test_unknown_code(self, db, service):
        result = service.validate(db, "NOPE", Decimal("25.00"), now=NOW)

        assert not result.valid
        assert result.reason == "invalid_code"
        assert result.message == "Invalid discount code"
        assert result.discount_amount == Decimal("0")

    def test_blank_code(self, db, service):
        result = service.validate(db, "   ", Decimal("25.00"), now=NOW)
        assert result.reason == "invalid_code"

    def test_inactive_checked_before_dates(self, db, service, make_coupon):
        make_coupon("OLD", is_active=False, end_date=NOW - timedelta(days=30))
        result = service.validate(db, "OLD", Decimal("25.00"), now=NOW)

        assert result.reason == "not_active"
        assert result.message == "This discount code is not active"

    def test_not_yet_active(self, db, service, make_coupon):
        make_coupon("SOON", start_date=NOW + timedelta(days=1))
        result = service.validate(db, "SOON", Decimal("25.00"), now=NOW)

        assert result.reason == "not_yet_active"
        assert result.message == "This discount code is not yet active"

    def test_expired_message_names_the_date(self, db, service, make_coupon):
        make_coupon("GONE", end_date=datetime(2026, 5, 31, 23, 0, tzinfo=timezone.utc))
        result = service.validate(db, "GONE", Decimal("25.00"), now=NOW)

        assert result.reason == "expired"
        assert result.message == "This discount code expired on 2026-05-31"

    def test_expired_checked_before_usage_limit(self, db, service, make_coupon):
        make_coupon("BOTH", end_date=NOW - timedelta(days=1), usage_limit=1, usage_count=1)
        result = service.validate(db, "BOTH", Decimal("25.00"), now=NOW)
        assert result.reason == "expired"

    def test_usage_limit_reached(self, db, service, make_coupon):
        make_coupon("ONCE", usage_limit=1, usage_count=1)
        result = service.validate(db, "ONCE", Decimal("25.00"), now=NOW)

        assert result.reason == "limit_reached"
        assert result.message == "This discount code has reached its usage limit"

    def test_minimum_not_met(self, db, service, make_coupon):
        make_coupon("SAVE10", minimum_order_amount=Decimal("20"))
        result = service.validate(db, "SAVE10", Decimal("15.00"), now=NOW)

        assert not result.valid
        assert result.reason == "minimum_not_met"
        assert result.message == "This discount code requires a minimum order of $20.00"

    def test_minimum_met_exactly(self, db, service, make_coupon):
        make_coupon("SAVE10", minimum_order_amount=Decimal("20"))
        result = service.validate(db, "SAVE10", Decimal("20.00"), now=NOW)
        assert result.valid

    def test_fixed_discount_capped_at_subtotal(self, db, service, make_coupon):
        make_coupon("BIG", "fixed", 50)
        result = service.validate(db, "BIG", Decimal("12.00"), now=NOW)

        assert result.valid
        assert result.discount_amount == Decimal("12.00")


class TestApply:
    def test_records_discount_and_claims_use(self, db, service, make_coupon, make_order, usage_of):
        coupon = make_coupon("SAVE10")
        coupon_id = coupon.id
        order_id = make_order()

        service.apply(db, order_id, coupon_id, Decimal("2.5"))

        db.expire_all()
        order = db.get(Order, order_id)
        assert order.coupon_id == coupon_id
        assert order.coupon_code == "SAVE10"
        assert order.discount_amount == Decimal("2.50")
        assert order.total_amount == Decimal("25.00")
        assert usage_of(coupon_id) == 1

    def test_exhausted_coupon_leaves_order_untouched(
        self, db, service, make_coupon, make_order, usage_of
    ):
        coupon = make_coupon("ONCE", usage_limit=1, usage_count=1)
        coupon_id = coupon.id
        order_id = make_order()

        with pytest.raises(ValidationFailedError):
            service.apply(db, order_id, coupon_id, Decimal("2.5"))

        db.expire_all()
        order = db.get(Order, order_id)
        assert order.coupon_id is None
        assert order.discount_amount == Decimal("0.00")
        assert usage_of(coupon_id) == 1

    def test_uncommitted_apply_rolls_back_with_caller(
        self, db, service, make_coupon, make_order, usage_of
    ):
        coupon = make_coupon("SAVE10")
        coupon_id = coupon.id
        order_id = make_order()

        service.apply(db, order_id, coupon_id, Decimal("2.5"), commit=False)
        db.rollback()

        order = db.get(Order, order_id)
        assert order.coupon_id is None
        assert usage_of(coupon_id) == 0

    def test_unknown_order(self, db, service, make_coupon):
        coupon = make_coupon("SAVE10")
        with pytest.raises(NotFoundError):
            service.apply(db, "missing", coupon.id, Decimal("1"))

    def test_unknown_coupon(self, db, service, make_order):
        order_id = make_order()
        with pytest.raises(NotFoundError):
            service.apply(db, order_id, "missing", Decimal("1"))

    def test_last_use_goes_to_one_order(self, db, service, make_coupon, make_order, usage_of):
        coupon = make_coupon("LAST", "fixed", 5, usage_limit=1)
        coupon_id = coupon.id
        first, second = make_order(), make_order()

        # Both orders validated while one use was still left
        assert service.validate(db, "LAST", Decimal("25.00"), now=NOW).valid
        assert service.validate(db, "LAST", Decimal("25.00"), now=NOW).valid

        service.apply(db, first, coupon_id, Decimal("5"))
        with pytest.raises(ValidationFailedError):
            service.apply(db, second, coupon_id, Decimal("5"))

        assert usage_of(coupon_id) == 1


class TestActiveCoupons:
    def test_lists_only_redeemable(self, db, service, make_coupon):
        make_coupon("LIVE")
        make_coupon("OFF", is_active=False)
        make_coupon("GONE", end_date=NOW - timedelta(days=1))
        make_coupon("SOON", start_date=NOW + timedelta(days=1))
        make_coupon("USED", usage_limit=2, usage_count=2)
        make_coupon("WINDOW", start_date=NOW - timedelta(days=1), end_date=NOW + timedelta(days=1))

        codes = {coupon.code for coupon in service.get_active_coupons(db, now=NOW)}
        assert codes == {"LIVE", "WINDOW"}


class TestCreateCoupon:
    def test_creates_upper_case_code(self, db, service):
        coupon = service.create_coupon(db, " spring ", "percentage", Decimal("15"))

        assert coupon.code == "SPRING"
        assert coupon.usage_count == 0
        assert service.validate(db, "spring", Decimal("10.00"), now=NOW).valid

    def test_duplicate_code(self, db, service, make_coupon):
        make_coupon("SAVE10")
        with pytest.raises(ValidationFailedError) as exc_info:
            service.create_coupon(db, "save10", "fixed", Decimal("5"))
        assert "already exists" in exc_info.value.reason

    def test_percentage_over_100(self, db, service):
        with pytest.raises(ValidationFailedError):
            service.create_coupon(db, "TOOMUCH", "percentage", Decimal("150"))

    def test_unknown_type(self, db, service):
        with pytest.raises(ValidationFailedError):
            service.create_coupon(db, "ODD", "bogo", Decimal("5"))

    def test_end_before_start(self, db, service):
        with pytest.raises(ValidationFailedError):
            service.create_coupon(
                db, "BACKWARDS", "fixed", Decimal("5"),
                start_date=NOW, end_date=NOW - timedelta(days=1),
            )

    def test_mixed_naive_and_aware_window(self, db, service):
        coupon = service.create_coupon(
            db, "SUMMER", "fixed", Decimal("5"),
            start_date=NOW, end_date=datetime(2026, 7, 1, 12, 0),
        )

        assert coupon.end_date.replace(tzinfo=None) == datetime(2026, 7, 1, 12, 0)
        assert service.validate(db, "SUMMER", Decimal("10.00"), now=NOW + timedelta(days=1)).valid

    def test_mixed_window_end_before_start(self, db, service):
        with pytest.raises(ValidationFailedError) as exc_info:
            service.create_coupon(
                db, "BACKWARDS", "fixed", Decimal("5"),
                start_date=datetime(2026, 6, 2), end_date=NOW,
            )
        assert "end date" in exc_info.value.reason


class TestDiscountProperties:
    @given(
        subtotal=st.decimals(min_value=0, max_value=100000, places=2,
                             allow_nan=False, allow_infinity=False),
        value=st.decimals(min_value=0, max_value=100, places=2,
                          allow_nan=False, allow_infinity=False),
    )
    def test_percentage_never_exceeds_subtotal(self, subtotal, value):
        discount = compute_discount("percentage", value, subtotal)

        assert discount == subtotal * value / 100
        assert discount <= subtotal

    @given(
        subtotal=st.decimals(min_value=0, max_value=100000, places=2,
                             allow_nan=False, allow_infinity=False),
        value=st.decimals(min_value=0, max_value=100000, places=2,
                          allow_nan=False, allow_infinity=False),
    )
    def test_fixed_is_capped_at_subtotal(self, subtotal, value):
        discount = compute_discount("fixed", value, subtotal)

        assert discount == min(value, subtotal)
        assert assemble_order_totals(subtotal, discount).total_amount >= 0
