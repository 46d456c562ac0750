#!/usr/bin/env python3
"""
Checkout traffic generator for the checkout service
Fires concurrent checkouts at one low-stock product and reports how the
last units were shared out
"""

import requests
import random
import threading
import time
import uuid
from collections import Counter
from datetime import datetime

API_URL = "http://localhost:8000"

COUNTRIES = [
    ("US", "CA", "San Francisco", "94103"),
    ("US", "NY", "New York", "10001"),
    ("DE", "BE", "Berlin", "10115"),
    ("UK", "LDN", "London", "EC1A 1BB"),
]

SHIPPING_METHODS = ["standard", "express", "overnight", "pickup"]
PAYMENT_METHODS = ["credit_card", "debit_card", "paypal"]

results = Counter()
results_lock = threading.Lock()


def log(message):
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] {message}")


def record(outcome):
    with results_lock:
        results[outcome] += 1


def get_stock(product_id):
    """Read the current stock level of a product through the inventory check."""
    response = requests.post(
        f"{API_URL}/inventory/check",
        json={"items": [{"product_id": product_id, "quantity": 1}]},
        timeout=5
    )
    response.raise_for_status()
    data = response.json()
    items = data["available_items"] + data["unavailable_items"]
    return items[0]["current_stock"]


def build_checkout(buyer_id, product_id, coupon_code=None):
    country, state, city, postal_code = random.choice(COUNTRIES)
    payload = {
        "session_id": f"session-{buyer_id}-{uuid.uuid4().hex[:8]}",
        "items": [{"product_id": product_id, "quantity": 1}],
        "shipping_address": {
            "full_name": f"Buyer {buyer_id}",
            "address_line1": f"{random.randint(1, 999)} Main Street",
            "city": city,
            "state": state,
            "postal_code": postal_code,
            "country": country,
        },
        "shipping_method": random.choice(SHIPPING_METHODS),
        "payment_method": random.choice(PAYMENT_METHODS),
        "customer_email": f"buyer{buyer_id}@example.com",
    }
    if coupon_code:
        payload["coupon_code"] = coupon_code
    return payload


def buyer(buyer_id, product_id, start_event, coupon_code=None):
    """Wait for the starting gun, then check out one unit."""
    payload = build_checkout(buyer_id, product_id, coupon_code)
    start_event.wait()
    try:
        response = requests.post(f"{API_URL}/checkout", json=payload, timeout=10)
    except Exception as e:
        log(f"Buyer {buyer_id}: Checkout error - {e}")
        record("error")
        return

    if response.status_code == 200:
        data = response.json()
        warnings = data.get("warnings", [])
        log(f"Buyer {buyer_id}: Order {data['order_number']} placed, total {data['totals']['total_amount']}"
            + (f" ({'; '.join(warnings)})" if warnings else ""))
        record("shortfall_warning" if any("sold out" in w for w in warnings) else "placed")
    elif response.status_code == 409:
        log(f"Buyer {buyer_id}: Rejected - {response.json().get('detail')}")
        record("rejected")
    else:
        log(f"Buyer {buyer_id}: Checkout failed - {response.status_code}")
        record(f"http_{response.status_code}")


def run_burst(product_id, buyers, coupon_code=None):
    """Release all buyers at once against the same product."""
    stock_before = get_stock(product_id)
    log(f"Product {product_id} has {stock_before} units; releasing {buyers} buyers")

    start_event = threading.Event()
    threads = [
        threading.Thread(target=buyer, args=(i, product_id, start_event, coupon_code))
        for i in range(buyers)
    ]
    for thread in threads:
        thread.start()

    time.sleep(0.5)
    start_event.set()

    for thread in threads:
        thread.join(timeout=30)

    stock_after = get_stock(product_id)
    log("=" * 60)
    log(f"Stock before: {stock_before}, after: {stock_after}")
    for outcome, count in sorted(results.items()):
        log(f"{outcome}: {count}")

    sold = results["placed"] + results["shortfall_warning"]
    if stock_after < 0:
        log("Stock went negative!")
    elif results["shortfall_warning"]:
        log(f"{results['shortfall_warning']} orders were accepted past the last unit")
    elif sold > stock_before:
        log(f"Sold {sold} units with only {stock_before} in stock")
    else:
        log("No unit was sold twice")
    log("=" * 60)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generate concurrent checkout traffic")
    parser.add_argument(
        "--product",
        type=str,
        default="spiced-dates",
        help="Product to buy (default: spiced-dates)"
    )
    parser.add_argument(
        "--buyers",
        type=int,
        default=20,
        help="Number of concurrent buyers (default: 20)"
    )
    parser.add_argument(
        "--coupon",
        type=str,
        default=None,
        help="Coupon code every buyer applies"
    )
    parser.add_argument(
        "--url",
        type=str,
        default="http://localhost:8000",
        help="API URL (default: http://localhost:8000)"
    )

    args = parser.parse_args()
    API_URL = args.url

    log("=" * 60)
    log("Checkout Traffic Generator")
    log("=" * 60)
    log(f"API URL: {API_URL}")
    log(f"Product: {args.product}")
    log(f"Concurrent Buyers: {args.buyers}")
    log("=" * 60)

    run_burst(args.product, args.buyers, args.coupon)
