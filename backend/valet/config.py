# backend/valet/config.py
from __future__ import annotations
import os


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/valet.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///valet.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    BRAND_NAME = os.environ.get("BRAND_NAME", "ValetPro")

    # Payment links (Stripe)
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "usd")
    PAYMENT_SUCCESS_URL = os.environ.get("PAYMENT_SUCCESS_URL", "https://example.com/thanks")

    # Outbound SMS (Twilio REST API)
    TWILIO_SID = os.environ.get("TWILIO_SID")
    TWILIO_AUTH = os.environ.get("TWILIO_AUTH")
    TWILIO_FROM_NUMBER = os.environ.get("TWILIO_FROM_NUMBER")
    DISABLE_SMS_SENDING = _env_flag("DISABLE_SMS_SENDING")

    # Per-call network timeout for both providers. No automatic retries.
    PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "10"))

    # Inbound automation
    INBOUND_DUPLICATE_WINDOW_SECONDS = int(os.environ.get("INBOUND_DUPLICATE_WINDOW_SECONDS", "120"))
    PENDING_LINK_STALE_SECONDS = int(os.environ.get("PENDING_LINK_STALE_SECONDS", "300"))

    # "token:ROLE:Name[:location_id],..." resolved by decorators.require_staff
    STAFF_TOKENS = os.environ.get("STAFF_TOKENS", "")
