"""Tests for order confirmation emails."""
import smtplib

import pytest

import config
import notifications
from notifications import dispatch_order_confirmation, send_order_confirmation
from orders import place_order
from schemas import OrderItem, PaymentType
from tests.helpers import DELIVERY_DATE, get_order, get_product, order_body


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, msg):
        FakeSMTP.sent.append(msg)


class RefusingSMTP(FakeSMTP):
    def __init__(self, host, port, timeout=None):
        raise ConnectionRefusedError("connection refused")


class RejectingSMTP(FakeSMTP):
    def send_message(self, msg):
        raise smtplib.SMTPRecipientsRefused({msg["To"]: (550, b"no such user")})


@pytest.fixture
def mail_server(monkeypatch):
    """Enable SMTP and install ``server_class`` in place of ``smtplib.SMTP``."""
    monkeypatch.setattr(config, "SMTP_HOST", "smtp.test")
    FakeSMTP.sent = []

    def install(server_class=FakeSMTP):
        monkeypatch.setattr(notifications.smtplib, "SMTP", server_class)
        return FakeSMTP.sent

    return install


@pytest.fixture
def placed_order(db, user_id, address_id, make_product):
    pid = make_product(offer_price=100, quantity=5)
    return place_order(db, user_id, [OrderItem(product_id=pid, quantity=2)], address_id,
                       DELIVERY_DATE, PaymentType.COD).order


class TestSendOrderConfirmation:
    def test_sends_to_address_email(self, db, mail_server, placed_order):
        sent = mail_server()
        assert dispatch_order_confirmation(db, placed_order) is True
        (msg,) = sent
        assert msg["To"] == "anna@example.com"
        assert placed_order["cod_details"]["tracking_number"] in msg.get_content()

    def test_skipped_without_smtp_host(self, placed_order):
        assert send_order_confirmation(placed_order, {"email": "anna@example.com"}, None) is False

    def test_skipped_without_recipient(self, mail_server, placed_order):
        sent = mail_server()
        assert send_order_confirmation(placed_order, {}, None) is False
        assert sent == []

    @pytest.mark.parametrize("server_class", [RefusingSMTP, RejectingSMTP])
    def test_delivery_failure_returns_false(self, mail_server, placed_order, server_class):
        mail_server(server_class)
        assert send_order_confirmation(placed_order, {"email": "anna@example.com"}, None) is False


class TestDispatchOrderConfirmation:
    def test_malformed_user_id_is_swallowed(self, db, mail_server, placed_order):
        sent = mail_server()
        assert dispatch_order_confirmation(db, {**placed_order, "user_id": "not-an-id"}) is False
        assert sent == []

    def test_missing_address_falls_back_to_user_email(self, db, mail_server, placed_order):
        sent = mail_server()
        db["address"].delete_many({})
        assert dispatch_order_confirmation(db, placed_order) is True
        assert sent[0]["To"] == "anna@example.com"


class TestPlacementWithFailingMail:
    @pytest.mark.parametrize("server_class", [RefusingSMTP, RejectingSMTP])
    def test_cod_order_survives(self, client, db, mail_server, user_headers, address_id, make_product,
                                server_class):
        mail_server(server_class)
        pid = make_product(quantity=5)

        response = client.post("/order/cod", json=order_body(address_id, [(pid, 2)]), headers=user_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert get_order(db, data["order"]["_id"]) is not None
        assert get_product(db, pid)["quantity"] == 3

    def test_online_order_survives(self, client, db, mail_server, user_headers, address_id, make_product):
        mail_server(RefusingSMTP)
        pid = make_product(quantity=5)

        response = client.post("/order/stripe", json=order_body(address_id, [(pid, 1)]), headers=user_headers)

        data = response.json()
        assert data["success"] is True
        assert data["url"].startswith("https://checkout.stripe.com/")
        assert get_order(db, data["order_id"]) is not None
        assert get_product(db, pid)["quantity"] == 4
