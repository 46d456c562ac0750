"""Tests for the FastAPI API."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from database import get_db
from repositories import CheckoutAttemptRepository, OrderRepository, ProductRepository

CHECKOUT = {
    "session_id": "sess-api",
    "items": [{"product_id": "P1", "quantity": 2}, {"product_id": "P2", "quantity": 1}],
    "shipping_address": {
        "full_name": "Ada Buyer",
        "address_line1": "1 Market Street",
        "city": "Berlin",
        "state": "BE",
        "postal_code": "10115",
        "country": "DE",
    },
    "shipping_method": "pickup",
    "payment_method": "credit_card",
    "coupon_code": "SAVE10",
}


@pytest.fixture
def api_client(session_factory, make_product, make_coupon):
    """Test client backed by the in-memory test database."""
    make_product("P1", "10.00", 10, name="Ginger Honey")
    make_product("P2", "5.00", 5, name="Spiced Dates")
    make_product("P3", "18.00", 0, name="Saffron Almonds", allow_backorders=True)
    make_coupon("SAVE10", "percentage", 10, minimum_order_amount=Decimal("20"),
                description="10% off orders over $20")

    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealthCheck:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestCheckout:
    def test_places_order(self, api_client):
        response = api_client.post("/checkout", json=CHECKOUT)
        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Order placed successfully"
        assert data["stage"] == "notified"
        assert data["order_number"] == data["order_id"][:8].upper()
        assert Decimal(data["totals"]["discount_amount"]) == Decimal("2.50")
        assert Decimal(data["totals"]["total_amount"]) == Decimal("25.00")
        assert data["warnings"] == []
        assert data["replayed"] is False

    def test_resubmission_replays(self, api_client):
        payload = dict(CHECKOUT, idempotency_key="api-replay")
        first = api_client.post("/checkout", json=payload).json()
        second = api_client.post("/checkout", json=payload)

        assert second.status_code == 200
        assert second.json()["order_id"] == first["order_id"]
        assert second.json()["replayed"] is True

    def test_unavailable_items(self, api_client):
        payload = dict(CHECKOUT, items=[{"product_id": "P3", "quantity": 1}])
        response = api_client.post("/checkout", json=payload)

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["failed_stage"] == "inventory"
        assert "Saffron Almonds" in detail["message"]
        assert detail["unavailable_items"][0]["product_id"] == "P3"
        assert detail["unavailable_items"][0]["backorder_available"] is True

    def test_unknown_shipping_method(self, api_client):
        response = api_client.post("/checkout", json=dict(CHECKOUT, shipping_method="teleport"))
        assert response.status_code == 400
        assert "teleport" in response.json()["detail"]

    def test_duplicate_in_progress(self, api_client, db):
        CheckoutAttemptRepository(db).create("client-key", "sess-api")
        response = api_client.post("/checkout", json=dict(CHECKOUT, idempotency_key="client-key"))

        assert response.status_code == 409
        assert "already in progress" in response.json()["detail"]

    def test_store_failure(self, api_client, monkeypatch):
        def broken(self, order):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(OrderRepository, "add", broken)
        response = api_client.post("/checkout", json=CHECKOUT)

        assert response.status_code == 500
        assert "Nothing was charged" in response.json()["detail"]

    def test_stock_read_failure_can_be_retried(self, api_client, monkeypatch):
        def broken(self, product_ids):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        payload = dict(CHECKOUT, idempotency_key="api-read-failure")
        monkeypatch.setattr(ProductRepository, "get_many", broken)
        response = api_client.post("/checkout", json=payload)

        assert response.status_code == 500
        assert "could not check stock" in response.json()["detail"]

        monkeypatch.undo()
        assert api_client.post("/checkout", json=payload).status_code == 200

    def test_replay_keeps_warnings(self, api_client):
        payload = dict(CHECKOUT, coupon_code="NOPE", idempotency_key="api-replay-warning")
        first = api_client.post("/checkout", json=payload).json()
        second = api_client.post("/checkout", json=payload).json()

        assert second["replayed"] is True
        assert second["warnings"] == first["warnings"] == ["Invalid discount code"]
        assert second["notification_sent"] == first["notification_sent"]

    def test_stalled_attempts(self, api_client, db):
        attempts = CheckoutAttemptRepository(db)
        stuck = attempts.create("stuck-key", "sess-api")
        stuck.updated_at = datetime.now(timezone.utc) - timedelta(hours=1)
        db.commit()
        attempts.create("fresh-key", "sess-api")

        response = api_client.get("/checkout/stalled")
        assert response.status_code == 200
        data = response.json()
        assert [attempt["idempotency_key"] for attempt in data] == ["stuck-key"]
        assert data[0]["status"] == "in_progress"
        assert data[0]["stage"] == "started"

        response = api_client.get("/checkout/stalled", params={"older_than_minutes": 120})
        assert response.json() == []

    def test_empty_cart_rejected(self, api_client):
        response = api_client.post("/checkout", json=dict(CHECKOUT, items=[]))
        assert response.status_code == 422

    def test_zero_quantity_rejected(self, api_client):
        payload = dict(CHECKOUT, items=[{"product_id": "P1", "quantity": 0}])
        assert api_client.post("/checkout", json=payload).status_code == 422


class TestInventory:
    def test_check(self, api_client):
        response = api_client.post(
            "/inventory/check",
            json={"items": [{"product_id": "P1", "quantity": 3}, {"product_id": "P2", "quantity": 9}]},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert [item["product_id"] for item in data["available_items"]] == ["P1"]
        assert [item["product_id"] for item in data["unavailable_items"]] == ["P2"]

    def test_low_stock(self, api_client):
        response = api_client.get("/inventory/low-stock")
        assert response.status_code == 200
        assert [product["id"] for product in response.json()] == ["P2"]

    def test_low_stock_threshold(self, api_client):
        response = api_client.get("/inventory/low-stock", params={"threshold": 11})
        assert [product["id"] for product in response.json()] == ["P2", "P1"]

    def test_out_of_stock(self, api_client):
        response = api_client.get("/inventory/out-of-stock")
        assert [product["id"] for product in response.json()] == ["P3"]


class TestCoupons:
    def test_validate(self, api_client):
        response = api_client.post("/coupons/validate", json={"code": "save10", "subtotal": "25.00"})
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert Decimal(data["discount_amount"]) == Decimal("2.50")
        assert data["message"] == "Discount applied: 10% off orders over $20"

    def test_validate_below_minimum(self, api_client):
        response = api_client.post("/coupons/validate", json={"code": "SAVE10", "subtotal": "15"})
        data = response.json()
        assert data["valid"] is False
        assert data["message"] == "This discount code requires a minimum order of $20.00"

    def test_active(self, api_client):
        response = api_client.get("/coupons/active")
        assert response.status_code == 200
        assert [coupon["code"] for coupon in response.json()] == ["SAVE10"]

    def test_create(self, api_client):
        response = api_client.post(
            "/coupons",
            json={"code": "spring", "discount_type": "fixed", "discount_value": "5", "usage_limit": 100},
        )
        assert response.status_code == 201
        data = response.json()
        assert data["code"] == "SPRING"
        assert data["usage_count"] == 0

    def test_create_duplicate(self, api_client):
        response = api_client.post(
            "/coupons",
            json={"code": "SAVE10", "discount_type": "fixed", "discount_value": "5"},
        )
        assert response.status_code == 400
        assert "already exists" in response.json()["detail"]

    def test_create_unknown_type(self, api_client):
        response = api_client.post(
            "/coupons",
            json={"code": "ODD", "discount_type": "bogo", "discount_value": "5"},
        )
        assert response.status_code == 422


class TestOrders:
    def test_get_order(self, api_client):
        order_id = api_client.post("/checkout", json=CHECKOUT).json()["order_id"]

        response = api_client.get(f"/orders/{order_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == order_id
        assert data["coupon_code"] == "SAVE10"
        assert data["status"] == "pending"
        assert [(item["product_id"], item["quantity"]) for item in data["items"]] == [
            ("P1", 2),
            ("P2", 1),
        ]

    def test_unknown_order(self, api_client):
        response = api_client.get("/orders/missing")
        assert response.status_code == 404
