"""
Shopping cart state.

A cart is a ``{product_id: quantity}`` mapping kept on the user document.
All mutations go through ``Cart`` so quantities are checked against the
product's live stock in one place.
"""
import math
from typing import Any, Dict, Iterable, Mapping, Optional

from errors import InsufficientStockError


class Cart:
    def __init__(self, items: Optional[Mapping[str, Any]] = None):
        self.items: Dict[str, int] = {}
        for product_id, quantity in (items or {}).items():
            try:
                quantity = int(quantity)
            except (TypeError, ValueError):
                continue
            if quantity > 0:
                self.items[str(product_id)] = quantity

    def add(self, product: Mapping[str, Any]) -> int:
        """Add one unit; returns the new quantity."""
        product_id = str(product["_id"])
        available = product.get("quantity", 0)
        if available <= 0:
            raise InsufficientStockError(product_id, 0, 1, product.get("name"))
        current = self.items.get(product_id, 0)
        if current >= available:
            raise InsufficientStockError(product_id, available, current + 1, product.get("name"))
        self.items[product_id] = current + 1
        return self.items[product_id]

    def update(self, product: Mapping[str, Any], quantity: int) -> None:
        product_id = str(product["_id"])
        available = product.get("quantity", 0)
        if quantity > available:
            raise InsufficientStockError(product_id, available, quantity, product.get("name"))
        if quantity <= 0:
            self.items.pop(product_id, None)
        else:
            self.items[product_id] = quantity

    def remove(self, product_id: str) -> None:
        """Take one unit off, dropping the entry when it reaches zero."""
        if product_id not in self.items:
            return
        self.items[product_id] -= 1
        if self.items[product_id] <= 0:
            del self.items[product_id]

    def count(self) -> int:
        return sum(self.items.values())

    def amount(self, products: Iterable[Mapping[str, Any]]) -> float:
        """Sum of offer_price * quantity, floored to two decimals. Unknown products are skipped."""
        by_id = {str(p["_id"]): p for p in products}
        total = 0.0
        for product_id, quantity in self.items.items():
            product = by_id.get(product_id)
            if product:
                total += product["offer_price"] * quantity
        return math.floor(total * 100) / 100

    def reconcile(self, products: Iterable[Mapping[str, Any]]) -> bool:
        """Drop products that no longer exist and clamp quantities to stock.

        Returns True if anything changed.
        """
        by_id = {str(p["_id"]): p for p in products}
        changed = False
        for product_id in list(self.items):
            product = by_id.get(product_id)
            available = product.get("quantity", 0) if product else 0
            if available <= 0:
                del self.items[product_id]
                changed = True
            elif self.items[product_id] > available:
                self.items[product_id] = available
                changed = True
        return changed

    def to_dict(self) -> Dict[str, int]:
        return dict(self.items)
