"""Shared helpers for storefront tests."""
import hashlib
import hmac
import json
import time
from datetime import date

from bson import ObjectId

WEBHOOK_SECRET = "whsec_test_secret"
SELLER_KEY = "test-seller-key"
DELIVERY_DATE = date(2026, 11, 2)


def get_product(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})


def get_order(db, order_id):
    return db["order"].find_one({"_id": ObjectId(order_id)})


def order_body(address_id, lines):
    """JSON body for the order placement endpoints."""
    return {
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in lines],
        "address_id": address_id,
        "delivery_date": DELIVERY_DATE.isoformat(),
    }


def signed_event(event_type, order_id, user_id=None, payment_status="paid", secret=WEBHOOK_SECRET):
    """Build a webhook body and a valid Stripe-Signature header for it."""
    payload = json.dumps({
        "id": "evt_test",
        "object": "event",
        "type": event_type,
        "data": {"object": {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_status": payment_status,
            "metadata": {"order_id": order_id, "user_id": user_id or ""},
        }},
    })
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload, f"t={timestamp},v1={signature}"
