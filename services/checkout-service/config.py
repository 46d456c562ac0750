"""Configuration settings for the checkout service."""
import os
from decimal import Decimal
from typing import Dict

# Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./checkout.db")
SEED_DATABASE = os.getenv("SEED_DATABASE", "true").lower() == "true"

# Service URLs
OTEL_EXPORTER_OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
OTEL_ENABLED = os.getenv("OTEL_ENABLED", "true").lower() == "true"
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL", "http://localhost:3004")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

# Pricing policy
TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.10"))
# Indian state the seller ships from; blank treats any addressed state as intra-state
GST_HOME_STATE = os.getenv("GST_HOME_STATE", "").strip().upper()
SHIPPING_METHODS: Dict[str, Decimal] = {
    "standard": Decimal("5.99"),
    "express": Decimal("12.99"),
    "overnight": Decimal("24.99"),
    "pickup": Decimal("0.00"),
}

# Checkout behaviour
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))
IDEMPOTENCY_WINDOW_SECONDS = int(os.getenv("IDEMPOTENCY_WINDOW_SECONDS", "600"))
NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "2"))

# Application Settings
SERVICE_NAME = "checkout-service"
API_VERSION = "1.0.0"
