"""
Reconcile orders from Stripe Checkout webhook events.

Every write here is an unconditional overwrite, so Stripe redelivering an
event leaves the order exactly as the first delivery did.
"""
import logging
from typing import Any, Dict, Optional

from pymongo.database import Database

from database import now_utc, parse_object_id
from errors import NotFoundError, ValidationError
from inventory import release_stock
from schemas import OrderStatus

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
SESSION_EXPIRED = "checkout.session.expired"


def _session_metadata(event: Dict[str, Any]) -> Dict[str, Any]:
    session = (event.get("data") or {}).get("object") or {}
    metadata = session.get("metadata") or {}
    if not metadata.get("order_id"):
        raise ValidationError(f"Event {event.get('id')} has no order_id in metadata")
    return {**metadata, "payment_status": session.get("payment_status")}


def mark_paid(db: Database, order_id: str, user_id: Optional[str] = None) -> None:
    result = db["order"].update_one(
        {"_id": parse_object_id(order_id)},
        {"$set": {
            "is_paid": True,
            "status": OrderStatus.PAYMENT_RECEIVED.value,
            "updated_at": now_utc(),
        }},
    )
    if result.matched_count == 0:
        raise NotFoundError("order", order_id)
    if user_id:
        db["user"].update_one({"_id": parse_object_id(user_id)}, {"$set": {"cart_items": {}}})
    logger.info("Order %s paid", order_id)


def expire_order(db: Database, order_id: str) -> bool:
    """Delete an unpaid order whose checkout session expired and give its stock back.

    Returns False when the order was already paid, in which case it is left alone.
    """
    order_oid = parse_object_id(order_id)
    # the delete claims the order; only the caller that removed it restocks
    order = db["order"].find_one_and_delete({"_id": order_oid, "is_paid": {"$ne": True}})
    if order is None:
        if db["order"].find_one({"_id": order_oid}, {"_id": 1}) is None:
            raise NotFoundError("order", order_id)
        logger.warning("Ignoring expiry for paid order %s", order_id)
        return False
    for item in order.get("items", []):
        release_stock(db, item["product_id"], item["quantity"])
    logger.info("Order %s expired and deleted", order_id)
    return True


def handle_event(db: Database, event: Dict[str, Any]) -> str:
    """Apply one verified event and return a short outcome label."""
    event_type = event.get("type")

    if event_type == SESSION_COMPLETED:
        metadata = _session_metadata(event)
        if metadata["payment_status"] not in (None, "paid"):
            logger.info("Session for order %s completed without payment (%s)",
                        metadata["order_id"], metadata["payment_status"])
            return "unpaid"
        mark_paid(db, metadata["order_id"], metadata.get("user_id"))
        return "paid"

    if event_type == SESSION_EXPIRED:
        metadata = _session_metadata(event)
        return "expired" if expire_order(db, metadata["order_id"]) else "ignored"

    logger.info("Unhandled event type %s", event_type)
    return "ignored"
