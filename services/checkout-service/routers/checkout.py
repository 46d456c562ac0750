"""Checkout API router."""
from datetime import timedelta
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from opentelemetry import trace

from database import get_db
from dependencies import get_checkout_service
from errors import (
    DuplicateCheckoutError,
    PartialCommitError,
    PersistenceError,
    ValidationFailedError,
)
from repositories import CheckoutAttemptRepository
from schemas import (
    CheckoutAttemptResponse,
    CheckoutRequest,
    CheckoutResponse,
    InventoryCheckResponseItem,
    OrderTotalsResponse,
)
from services.checkout_service import CheckoutService

router = APIRouter(prefix="/checkout", tags=["checkout"])

STORE_FAILURE_MESSAGES = {
    "check inventory": "We could not check stock for your cart. Nothing was charged; please try again.",
    "validate discount code": "We could not check your discount code. Nothing was charged; please try again.",
}
DEFAULT_STORE_FAILURE_MESSAGE = "We could not save your order. Nothing was charged; please try again."


@router.post("", response_model=CheckoutResponse)
async def checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """Place an order for the submitted cart."""
    try:
        result = await checkout_service.place_order(db, request)
    except ValidationFailedError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    except DuplicateCheckoutError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PartialCommitError as e:
        raise HTTPException(
            status_code=500,
            detail=f"Your order {e.order_id[:8].upper()} could not be completed and is being "
                   f"reviewed. You have not been charged."
        )
    except PersistenceError as e:
        raise HTTPException(
            status_code=500,
            detail=STORE_FAILURE_MESSAGES.get(e.operation, DEFAULT_STORE_FAILURE_MESSAGE)
        )

    if not result.success:
        raise HTTPException(status_code=409, detail={
            "message": result.message,
            "failed_stage": result.failed_stage,
            "unavailable_items": [
                InventoryCheckResponseItem.model_validate(item).model_dump(mode="json")
                for item in result.unavailable_items
            ],
        })

    return {
        "message": result.message,
        "order_id": result.order_id,
        "order_number": result.order_number,
        "stage": result.stage.value,
        "totals": OrderTotalsResponse.model_validate(result.totals),
        "warnings": result.warnings,
        "notification_sent": result.notification_sent,
        "replayed": result.replayed,
    }


@router.get("/stalled", response_model=List[CheckoutAttemptResponse])
async def get_stalled_checkouts(
    older_than_minutes: int = Query(10, ge=0, description="Minutes since the attempt last moved"),
    db: Session = Depends(get_db)
):
    """Attempts stuck in progress, or failed with an order that still needs reconciling."""
    attempts = CheckoutAttemptRepository(db).list_stalled(timedelta(minutes=older_than_minutes))

    span = trace.get_current_span()
    span.set_attribute("checkout.stalled_count", len(attempts))

    return attempts
