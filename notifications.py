"""
Order confirmation emails. Best-effort: nothing here ever fails an order.
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)


def render_confirmation(order: Dict[str, Any], user: Dict[str, Any], address: Optional[Dict[str, Any]],
                        products: Dict[str, Dict[str, Any]]) -> str:
    lines: List[str] = [f"Hej {user.get('name', '')},", "", f"Tack för din beställning {order['_id']}.", ""]
    for item in order.get("items", []):
        product = products.get(item["product_id"]) or {}
        price = product.get("offer_price", 0)
        lines.append(f"  {product.get('name', 'Produkt saknas')} x {item['quantity']}  {price * item['quantity']}")
    lines += [
        "",
        f"Totalt (inkl. moms): {order['amount']}",
        f"Betalning: {order['payment_type']}",
        f"Status: {order['status']}",
        f"Leveransdatum: {order['delivery_date']:%Y-%m-%d}",
    ]
    cod = order.get("cod_details")
    if cod:
        lines.append(f"Spårningsnummer: {cod['tracking_number']}")
    if address:
        lines.append(f"Leveransadress: {address.get('street')}, {address.get('zipcode')} {address.get('city')}")
    lines += ["", f"Dina beställningar: {config.CLIENT_URL}/my-orders"]
    return "\n".join(lines)


def send_order_confirmation(order: Dict[str, Any], user: Dict[str, Any], address: Optional[Dict[str, Any]],
                            products: Optional[Dict[str, Dict[str, Any]]] = None) -> bool:
    if not config.SMTP_HOST:
        logger.info("SMTP not configured, skipping confirmation for order %s", order.get("_id"))
        return False
    recipient = (address or {}).get("email") or user.get("email")
    if not recipient:
        logger.warning("No email for order %s, confirmation not sent", order.get("_id"))
        return False

    msg = EmailMessage()
    msg["Subject"] = f"Orderbekräftelse {order['_id']}"
    msg["From"] = config.MAIL_FROM
    msg["To"] = recipient
    msg.set_content(render_confirmation(order, user, address, products or {}))

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10) as smtp:
            smtp.starttls()
            if config.SMTP_USER:
                smtp.login(config.SMTP_USER, config.SMTP_PASSWORD or "")
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Sending confirmation for order %s failed: %s", order.get("_id"), e)
        return False
    logger.info("Confirmation for order %s sent to %s", order.get("_id"), recipient)
    return True


def dispatch_order_confirmation(db: Database, order: Dict[str, Any]) -> bool:
    """Load the order's user, address and products and send the confirmation.

    Runs as a background task after the response, so any error is logged and swallowed.
    """
    try:
        user = db["user"].find_one({"_id": ObjectId(order["user_id"])}) or {}
        address = db["address"].find_one({"_id": ObjectId(order["address_id"])})
        ids = [ObjectId(item["product_id"]) for item in order.get("items", [])]
        products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}
        return send_order_confirmation(order, user, address, products)
    except Exception:
        logger.exception("Confirmation for order %s could not be dispatched", order.get("_id"))
        return False
