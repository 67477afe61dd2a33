"""
Stripe Checkout integration.

Creates hosted checkout sessions for online orders and verifies the signed
webhook events Stripe sends back.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import stripe

import config
from errors import ExternalServiceError, SignatureVerificationError

logger = logging.getLogger(__name__)


class StripeProvider:
    """Thin wrapper over the stripe SDK with errors mapped to ours."""

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str], currency: str = "sek"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def build_line_item(self, name: str, unit_amount: int, quantity: int) -> Dict[str, Any]:
        return {
            "price_data": {
                "currency": self.currency,
                "product_data": {"name": name},
                "unit_amount": unit_amount,
            },
            "quantity": quantity,
        }

    def create_checkout_session(self, line_items: List[Dict[str, Any]], success_url: str,
                                cancel_url: str, metadata: Dict[str, str]) -> str:
        """Create a payment-mode Checkout Session and return its redirect URL."""
        if not self.api_key:
            raise ExternalServiceError("Payment provider not configured")
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                line_items=line_items,
                mode="payment",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error("Stripe session creation failed: %s", e)
            raise ExternalServiceError(f"Payment provider error: {e.user_message or 'request failed'}")
        logger.info("Created Stripe session %s for order %s", session.id, metadata.get("order_id"))
        return session.url

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and return the event as a plain dict."""
        if not self.webhook_secret:
            raise SignatureVerificationError("Webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")
        try:
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")
            event = json.loads(payload)
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(f"Webhook Error: {e}")
        except ValueError as e:
            raise SignatureVerificationError(f"Webhook Error: invalid payload ({e})")
        return event


def get_payment_provider() -> StripeProvider:
    return StripeProvider(config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET, config.CURRENCY)
