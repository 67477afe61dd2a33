"""
Runtime configuration, read from the environment.
"""
import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

SELLER_KEY = os.getenv("SELLER_KEY", "demo-seller-key")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
CURRENCY = os.getenv("CURRENCY", "sek")

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
MAIL_FROM = os.getenv("MAIL_FROM", SMTP_USER or "no-reply@localhost")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Business rules
TAX_RATE_PERCENT = 2
COD_DELIVERY_DAYS = 3
RESTOCK_DEFAULT_QUANTITY = 10
