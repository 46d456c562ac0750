"""Coupons API router."""
from typing import List
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from dependencies import get_discount_service
from errors import PersistenceError, ValidationFailedError
from schemas import CouponCreate, CouponResponse, CouponValidateRequest, CouponValidateResponse
from services.discount_service import DiscountService
from services.totals import to_money

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    request: CouponValidateRequest,
    db: Session = Depends(get_db),
    discount_service: DiscountService = Depends(get_discount_service)
):
    """Check a code against a subtotal without redeeming it."""
    result = discount_service.validate(db, request.code, request.subtotal)
    return {
        "valid": result.valid,
        "discount_amount": to_money(result.discount_amount),
        "message": result.message,
    }


@router.get("/active", response_model=List[CouponResponse])
async def get_active_coupons(
    db: Session = Depends(get_db),
    discount_service: DiscountService = Depends(get_discount_service)
):
    """Coupons that can currently be redeemed."""
    return discount_service.get_active_coupons(db)


@router.post("", response_model=CouponResponse, status_code=201)
async def create_coupon(
    request: CouponCreate,
    db: Session = Depends(get_db),
    discount_service: DiscountService = Depends(get_discount_service)
):
    """Create a coupon."""
    try:
        return discount_service.create_coupon(db, **request.model_dump())
    except ValidationFailedError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    except PersistenceError:
        raise HTTPException(status_code=500, detail="Could not save the coupon")
