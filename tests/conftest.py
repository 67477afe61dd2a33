"""Pytest fixtures for storefront tests."""
from types import SimpleNamespace

import mongomock
import pytest
import stripe
from fastapi.testclient import TestClient

import config
from database import create_document, get_db
from payments import StripeProvider, get_payment_provider
from schemas import Address, Product, User

from tests.helpers import SELLER_KEY, WEBHOOK_SECRET


@pytest.fixture(autouse=True)
def test_config(monkeypatch):
    monkeypatch.setattr(config, "SMTP_HOST", None)
    monkeypatch.setattr(config, "SELLER_KEY", SELLER_KEY)
    monkeypatch.setattr(config, "CLIENT_URL", "http://shop.test")


@pytest.fixture
def db():
    """An in-memory MongoDB database."""
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def checkout_sessions(monkeypatch):
    """Record Checkout Session requests instead of calling Stripe."""
    created = []

    def fake_create(**kwargs):
        created.append(kwargs)
        session_id = f"cs_test_{len(created)}"
        return SimpleNamespace(id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    return created


@pytest.fixture
def provider(checkout_sessions):
    return StripeProvider("sk_test_dummy", WEBHOOK_SECRET, "sek")


@pytest.fixture
def client(db, provider):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    """Insert a product and return its id."""

    def _make(name="Vetemjöl", offer_price=100, quantity=5, price=None, category="Bakning"):
        product = Product(
            name=name,
            description=["2 kg"],
            category=category,
            price=price if price is not None else offer_price,
            offer_price=offer_price,
            quantity=quantity,
            image=["https://img.test/1.jpg"],
        )
        return create_document(db, "product", product)

    return _make


@pytest.fixture
def user_id(db):
    user = User(name="Anna", email="anna@example.com", password_hash="x", cart_items={})
    return create_document(db, "user", user)


@pytest.fixture
def address_id(db, user_id):
    address = Address(
        user_id=user_id,
        first_name="Anna",
        last_name="Svensson",
        email="anna@example.com",
        street="Storgatan 1",
        city="Uppsala",
        state="Uppsala län",
        zipcode="75310",
        country="Sverige",
        phone="0701234567",
    )
    return create_document(db, "address", address)


@pytest.fixture
def user_headers(user_id):
    return {"X-User-Token": user_id}


@pytest.fixture
def seller_headers():
    return {"X-Seller-Key": SELLER_KEY}

