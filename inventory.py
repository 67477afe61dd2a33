"""
Stock reservation on top of atomic conditional updates.

A checkout reserves every line before anything else is written. Each
reservation is a single ``find_one_and_update`` guarded by
``quantity >= requested``, so two concurrent checkouts for the last unit
cannot both succeed and stock never goes negative. If any line fails, the
lines already reserved are released again.
"""
import logging
from typing import Any, Dict, Iterable, List, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now_utc, parse_object_id
from errors import InsufficientStockError, NotFoundError, ValidationError
from schemas import OrderItem

logger = logging.getLogger(__name__)


def sync_in_stock(db: Database, product_oid: ObjectId) -> None:
    """Converge ``in_stock`` to ``quantity > 0``.

    Both updates are conditional on the current quantity, so the flag ends up
    correct no matter how concurrent writers interleave.
    """
    products = db["product"]
    products.update_one(
        {"_id": product_oid, "quantity": {"$gt": 0}, "in_stock": {"$ne": True}},
        {"$set": {"in_stock": True}},
    )
    products.update_one(
        {"_id": product_oid, "quantity": {"$lte": 0}, "in_stock": {"$ne": False}},
        {"$set": {"in_stock": False}},
    )


def reserve_stock(db: Database, product_id: str, quantity: int) -> Dict[str, Any]:
    """Atomically take ``quantity`` units of a product and return it after the decrement."""
    product_oid = parse_object_id(product_id)
    product = db["product"].find_one_and_update(
        {"_id": product_oid, "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        current = db["product"].find_one({"_id": product_oid}, {"quantity": 1, "name": 1})
        if current is None:
            raise NotFoundError("product", product_id)
        raise InsufficientStockError(product_id, current.get("quantity", 0), quantity, current.get("name"))

    sync_in_stock(db, product_oid)
    product["in_stock"] = product["quantity"] > 0
    logger.debug("Reserved %s x %s, %s left", quantity, product_id, product["quantity"])
    return product


def release_stock(db: Database, product_id: str, quantity: int) -> bool:
    """Give ``quantity`` units back. Returns False if the product no longer exists."""
    try:
        product_oid = parse_object_id(product_id)
    except ValidationError:
        logger.warning("Cannot release stock for malformed product id %r", product_id)
        return False
    result = db["product"].update_one(
        {"_id": product_oid},
        {"$inc": {"quantity": quantity}, "$set": {"updated_at": now_utc()}},
    )
    if result.matched_count == 0:
        logger.warning("Product %s is gone, %s units not restored", product_id, quantity)
        return False
    sync_in_stock(db, product_oid)
    return True


class Reservation:
    """Stock taken for one checkout, released as a unit on failure."""

    def __init__(self, db: Database):
        self.db = db
        self.lines: List[Tuple[Dict[str, Any], int]] = []

    def reserve(self, product_id: str, quantity: int) -> Dict[str, Any]:
        product = reserve_stock(self.db, product_id, quantity)
        self.lines.append((product, quantity))
        return product

    def release(self) -> None:
        for product, quantity in reversed(self.lines):
            release_stock(self.db, str(product["_id"]), quantity)
        if self.lines:
            logger.info("Released %d reserved line(s)", len(self.lines))
        self.lines = []

    @property
    def subtotal(self) -> float:
        return sum(product["offer_price"] * quantity for product, quantity in self.lines)


def reserve_all(db: Database, items: Iterable[OrderItem]) -> Reservation:
    """Reserve every line in order; on any failure nothing stays reserved."""
    reservation = Reservation(db)
    try:
        for item in items:
            reservation.reserve(item.product_id, item.quantity)
    except Exception:
        reservation.release()
        raise
    return reservation
