"""Exceptions raised by the storefront services."""
from typing import Optional


class StoreError(Exception):
    """Base exception for all business-rule failures."""

    pass


class ValidationError(StoreError):
    """Raised when required fields are missing or a value is not allowed."""

    pass


class NotFoundError(StoreError):
    """Raised when a product, order, user or address doesn't exist."""

    def __init__(self, kind: str, ref: Optional[str] = None):
        self.kind = kind
        self.ref = ref
        msg = f"{kind.capitalize()} not found"
        if ref:
            msg = f"{msg}: {ref}"
        super().__init__(msg)


class InsufficientStockError(StoreError):
    """Raised when a requested quantity exceeds the available stock."""

    def __init__(self, product_id: str, available: int, requested: int, name: Optional[str] = None):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        label = name or product_id
        super().__init__(f"Only {available} of {label} in stock (requested {requested})")


class SignatureVerificationError(StoreError):
    """Raised when a payment webhook fails signature verification."""

    pass


class ExternalServiceError(StoreError):
    """Raised when the payment provider call fails."""

    pass


class PersistenceError(StoreError):
    """Raised when the database is unavailable or a write fails."""

    pass


class AuthenticationError(StoreError):
    """Raised when a user token or seller key is missing or invalid."""

    pass
