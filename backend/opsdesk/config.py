# backend/opsdesk/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///opsdesk.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Loyalty
    LOYALTY_STAMPS_REQUIRED = int(os.environ.get("LOYALTY_STAMPS_REQUIRED", "5"))

    # Proposals
    PROPOSAL_SEND_COOLDOWN_MINUTES = int(os.environ.get("PROPOSAL_SEND_COOLDOWN_MINUTES", "10"))
    PROPOSAL_FOLLOW_UP_AFTER_HOURS = int(os.environ.get("PROPOSAL_FOLLOW_UP_AFTER_HOURS", "48"))

    # Subscription billing
    SUBSCRIPTION_PAYMENT_FAILED_THRESHOLD = int(os.environ.get("SUBSCRIPTION_PAYMENT_FAILED_THRESHOLD", "3"))
    SUBSCRIPTION_SUSPEND_THRESHOLD = int(os.environ.get("SUBSCRIPTION_SUSPEND_THRESHOLD", "5"))

    # PIX charges
    PIX_CHARGE_TTL_HOURS = int(os.environ.get("PIX_CHARGE_TTL_HOURS", "24"))
    PIX_RETRY_TTL_HOURS = int(os.environ.get("PIX_RETRY_TTL_HOURS", "48"))
    PIX_REMINDER_INTERVAL_HOURS = int(os.environ.get("PIX_REMINDER_INTERVAL_HOURS", "4"))

    # When true, a stock failure aborts the whole appointment completion
    COMPLETION_STRICT_STOCK = _env_bool("COMPLETION_STRICT_STOCK", False)

    # Tasks
    INACTIVE_CUSTOMER_DAYS = int(os.environ.get("INACTIVE_CUSTOMER_DAYS", "60"))

    # Outbound collaborators (unset -> mock / log-only)
    PAYMENT_PROVIDER_URL = os.environ.get("PAYMENT_PROVIDER_URL")
    PAYMENT_PROVIDER_API_KEY = os.environ.get("PAYMENT_PROVIDER_API_KEY")
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET")
    EMAIL_API_URL = os.environ.get("EMAIL_API_URL")
    EMAIL_API_KEY = os.environ.get("EMAIL_API_KEY")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "no-reply@opsdesk.local")
    WHATSAPP_API_URL = os.environ.get("WHATSAPP_API_URL")
    WHATSAPP_API_KEY = os.environ.get("WHATSAPP_API_KEY")
    OUTBOUND_TIMEOUT_SECONDS = float(os.environ.get("OUTBOUND_TIMEOUT_SECONDS", "10"))


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    LOG_LEVEL = "DEBUG"
    PAYMENT_PROVIDER_URL = None
    PAYMENT_WEBHOOK_SECRET = None
    EMAIL_API_URL = None
    WHATSAPP_API_URL = None
