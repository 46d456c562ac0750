"""Exceptions raised by the checkout pipeline."""
from typing import Iterable, List, Optional


class CheckoutError(Exception):
    """Base exception for all checkout errors."""

    pass


class NotFoundError(CheckoutError):
    """Raised when a product, coupon or order does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class ValidationFailedError(CheckoutError):
    """Raised when a business rule rejects the request.

    The message is user facing and is rendered as-is.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InsufficientStockError(CheckoutError):
    """Raised when one or more products cannot cover the requested quantity."""

    def __init__(self, product_ids: Iterable[str]):
        self.product_ids: List[str] = list(product_ids)
        super().__init__(
            f"Insufficient stock for: {', '.join(self.product_ids)}"
        )


class PersistenceError(CheckoutError):
    """Raised when a store read or write fails."""

    def __init__(self, operation: str, detail: Optional[str] = None):
        self.operation = operation
        self.detail = detail
        msg = f"Failed to {operation}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class PartialCommitError(CheckoutError):
    """Raised when some checkout writes were committed and a later one failed.

    Carries enough context for an operator to reconcile the order by hand.
    """

    def __init__(self, order_id: str, completed_stages: Iterable[str], failed_stage: str):
        self.order_id = order_id
        self.completed_stages: List[str] = list(completed_stages)
        self.failed_stage = failed_stage
        super().__init__(
            f"Order {order_id} was partially committed: stage '{failed_stage}' failed "
            f"after {', '.join(self.completed_stages) or 'no stages'}"
        )


class DuplicateCheckoutError(CheckoutError):
    """Raised when a checkout with the same idempotency key is already running."""

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(
            "A checkout for this cart is already in progress. Please wait for it to finish."
        )
