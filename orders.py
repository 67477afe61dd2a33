"""
Order placement and seller-side order management.

Placement reserves stock for every line first (see ``inventory``), prices the
order from the reserved products, writes the order and, for online payment,
opens a Stripe Checkout Session. A failure at any step gives the reserved
stock back, so an order either exists with its stock taken or not at all.
"""
import logging
import math
import random
import string
import time as _time
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from database import create_document, now_utc, parse_object_id, to_public
from errors import ExternalServiceError, NotFoundError, PersistenceError, ValidationError
from inventory import release_stock, reserve_all
from payments import StripeProvider
from schemas import CodDetails, CodStatus, Order, OrderItem, OrderStatus, PaymentType

logger = logging.getLogger(__name__)

# cod_status -> (order status to move to, or None to keep the current one)
COD_STATUS_EFFECTS: Dict[CodStatus, Optional[OrderStatus]] = {
    CodStatus.NOT_SHIPPED: None,
    CodStatus.SENT_TO_AGENT: None,
    CodStatus.AT_AGENT: None,
    CodStatus.READY_FOR_PICKUP: OrderStatus.SHIPPED,
    CodStatus.PICKED_UP: OrderStatus.DELIVERED,
    CodStatus.RETURNED: OrderStatus.CANCELLED,
}

# Orders a customer or seller should see: cash on delivery, or paid online
VISIBLE_ORDERS = {"$or": [{"payment_type": PaymentType.COD.value}, {"is_paid": True}]}


@dataclass
class PlacedOrder:
    order: Dict[str, Any]
    url: Optional[str] = None


# ---------------------- Pricing ----------------------

def add_tax(subtotal: float) -> float:
    """Flat tax added once on the whole subtotal, rounded down."""
    return subtotal + math.floor(subtotal * config.TAX_RATE_PERCENT / 100)


def unit_amount_with_tax(offer_price: float) -> int:
    """Per-unit price including tax in minor currency units (öre), rounded down."""
    return math.floor(offer_price * (100 + config.TAX_RATE_PERCENT))


def make_tracking_number() -> str:
    suffix = "".join(random.choices(string.digits, k=4))
    return f"COD{int(_time.time() * 1000)}{suffix}"


def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _merge_lines(items: Iterable[Any]) -> List[OrderItem]:
    quantities: Dict[str, int] = {}
    for item in items:
        product_id = item.get("product_id") if isinstance(item, dict) else item.product_id
        quantity = item.get("quantity") if isinstance(item, dict) else item.quantity
        if not product_id or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Invalid data")
        quantities[product_id] = quantities.get(product_id, 0) + quantity
    return [OrderItem(product_id=pid, quantity=qty) for pid, qty in quantities.items()]


# ---------------------- Placement ----------------------

def place_order(db: Database, user_id: str, items: Iterable[Any], address_id: Optional[str],
                delivery_date: Optional[Union[date, datetime]], payment_type: Union[PaymentType, str],
                provider: Optional[StripeProvider] = None, origin: Optional[str] = None) -> PlacedOrder:
    items = list(items or [])
    if not address_id or not items or not delivery_date:
        raise ValidationError("Invalid data")
    lines = _merge_lines(items)
    try:
        payment_type = PaymentType(payment_type)
    except ValueError:
        raise ValidationError(f"Invalid payment type: {payment_type}")
    if payment_type is PaymentType.ONLINE and provider is None:
        raise ExternalServiceError("Payment provider not configured")

    address = db["address"].find_one({"_id": parse_object_id(address_id), "user_id": user_id})
    if not address:
        raise NotFoundError("address", address_id)

    reservation = reserve_all(db, lines)
    try:
        amount = add_tax(reservation.subtotal)
        delivery_at = _as_datetime(delivery_date)
        order = Order(
            user_id=user_id,
            items=lines,
            amount=amount,
            address_id=address_id,
            payment_type=payment_type,
            delivery_date=delivery_at,
            status=OrderStatus.PROCESSING if payment_type is PaymentType.COD else OrderStatus.AWAITING_PAYMENT,
        )
        if payment_type is PaymentType.COD:
            order.cod_details = CodDetails(
                tracking_number=make_tracking_number(),
                estimated_delivery=delivery_at + timedelta(days=config.COD_DELIVERY_DAYS),
                cod_amount=amount,
            )
        order_id = create_document(db, "order", order)
    except PyMongoError as e:
        logger.exception("Writing order for user %s failed", user_id)
        reservation.release()
        raise PersistenceError(f"Could not save order: {e}")
    except Exception:
        logger.exception("Building order for user %s failed", user_id)
        reservation.release()
        raise
    order_oid = ObjectId(order_id)

    url = None
    if payment_type is PaymentType.ONLINE:
        base = origin or config.CLIENT_URL
        try:
            line_items = [
                provider.build_line_item(product["name"], unit_amount_with_tax(product["offer_price"]), quantity)
                for product, quantity in reservation.lines
            ]
            url = provider.create_checkout_session(
                line_items,
                success_url=f"{base}/loader?next=my-orders",
                cancel_url=f"{base}/cart",
                metadata={"order_id": order_id, "user_id": user_id},
            )
        except Exception:
            db["order"].delete_one({"_id": order_oid})
            reservation.release()
            raise

    logger.info("Order %s placed by %s (%s, amount %s)", order_id, user_id, payment_type.value, amount)
    return PlacedOrder(order=to_public(db["order"].find_one({"_id": order_oid})), url=url)


# ---------------------- Listing ----------------------

def _object_ids(values: Iterable[str]) -> List[ObjectId]:
    out = []
    for value in values:
        try:
            out.append(ObjectId(value))
        except (InvalidId, TypeError):
            continue
    return out


def populate(db: Database, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Attach product documents to order lines and the address document to each order."""
    product_ids = {item["product_id"] for o in orders for item in o.get("items", [])}
    address_ids = {o.get("address_id") for o in orders if o.get("address_id")}
    products = {
        str(p["_id"]): to_public(p)
        for p in db["product"].find({"_id": {"$in": _object_ids(product_ids)}})
    }
    addresses = {
        str(a["_id"]): to_public(a)
        for a in db["address"].find({"_id": {"$in": _object_ids(address_ids)}})
    }
    for o in orders:
        to_public(o)
        o["items"] = [{**item, "product": products.get(item["product_id"])} for item in o.get("items", [])]
        o["address"] = addresses.get(o.get("address_id"))
    return orders


def list_user_orders(db: Database, user_id: str) -> List[Dict[str, Any]]:
    cursor = db["order"].find({"user_id": user_id, **VISIBLE_ORDERS}).sort("created_at", -1)
    return populate(db, list(cursor))


def list_all_orders(db: Database) -> List[Dict[str, Any]]:
    cursor = db["order"].find(VISIBLE_ORDERS).sort("created_at", -1)
    return populate(db, list(cursor))


# ---------------------- Seller management ----------------------

def _find_order(db: Database, order_id: str) -> Tuple[ObjectId, Dict[str, Any]]:
    order_oid = parse_object_id(order_id)
    order = db["order"].find_one({"_id": order_oid})
    if not order:
        raise NotFoundError("order", order_id)
    return order_oid, order


def update_status(db: Database, order_id: str, status: str) -> Dict[str, Any]:
    """Set any of the six order statuses; no ordering between them is enforced."""
    try:
        status = OrderStatus(status)
    except ValueError:
        raise ValidationError(f"Invalid status: {status}")
    order = db["order"].find_one_and_update(
        {"_id": parse_object_id(order_id)},
        {"$set": {"status": status.value, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise NotFoundError("order", order_id)
    logger.info("Order %s status -> %s", order_id, status.value)
    return to_public(order)


def update_cod_status(db: Database, order_id: str, cod_status: str) -> Dict[str, Any]:
    try:
        cod_status = CodStatus(cod_status)
    except ValueError:
        raise ValidationError(f"Invalid COD status: {cod_status}")
    order_oid, order = _find_order(db, order_id)
    if order.get("payment_type") != PaymentType.COD.value:
        raise ValidationError("COD status only applies to cash-on-delivery orders")

    fields: Dict[str, Any] = {
        "cod_details.cod_status": cod_status.value,
        "is_paid": cod_status is CodStatus.PICKED_UP,
        "updated_at": now_utc(),
    }
    new_status = COD_STATUS_EFFECTS[cod_status]
    if new_status is not None:
        fields["status"] = new_status.value

    updated = db["order"].find_one_and_update(
        {"_id": order_oid}, {"$set": fields}, return_document=ReturnDocument.AFTER
    )
    if not updated:
        raise NotFoundError("order", order_id)
    logger.info("Order %s COD status -> %s", order_id, cod_status.value)
    return to_public(updated)


def delete_order(db: Database, order_id: str) -> Dict[str, int]:
    """Delete the order, then give every line's quantity back to its product.

    The delete comes first so that of two concurrent calls only one restocks.
    """
    order = db["order"].find_one_and_delete({"_id": parse_object_id(order_id)})
    if order is None:
        raise NotFoundError("order", order_id)
    restored = skipped = 0
    for item in order.get("items", []):
        if release_stock(db, item["product_id"], item["quantity"]):
            restored += 1
        else:
            skipped += 1
    logger.info("Order %s deleted (%d line(s) restocked, %d skipped)", order_id, restored, skipped)
    return {"restored": restored, "skipped": skipped}
