# taskmarket/config.py
import os
from dotenv import load_dotenv

load_dotenv()

def _as_bool(val: str | None, default=False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}

def _as_list(val: str | None, default: list[str]) -> list[str]:
    if not val:
        return list(default)
    return [part.strip().upper() for part in val.split(",") if part.strip()]

class Config:
    # --- Core ---
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
    APP_VERSION = os.getenv("APP_VERSION")

    # DB
    SQLALCHEMY_DATABASE_URI = (
        os.getenv("SQLALCHEMY_DATABASE_URI")
        or os.getenv("DATABASE_URL")
        or "sqlite:///taskmarket.db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # --- Identity (issued by the auth service in front of us) ---
    USER_ID_HEADER = os.getenv("USER_ID_HEADER", "X-User-Id")

    # --- Logging ---
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_FILENAME = os.getenv("LOG_FILENAME", "taskmarket.log")
    LOG_JSON = _as_bool(os.getenv("LOG_JSON", "0"))

    # --- Sentry ---
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0"))

    # --- Billing ---
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "USD")
    INVOICE_TAX_RATE = os.getenv("INVOICE_TAX_RATE", "0.21")
    PAGE_SIZE = int(os.getenv("PAGE_SIZE", "10"))
    PROVIDER_TIMEOUT_SECONDS = int(os.getenv("PROVIDER_TIMEOUT_SECONDS", "20"))

    # --- Payments: card processor (Stripe) ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # --- Payments: wallet processor (PayPal) ---
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_APP_SECRET = os.getenv("PAYPAL_APP_SECRET")
    PAYPAL_API_URL = os.getenv("PAYPAL_API_URL", "https://api-m.sandbox.paypal.com")
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID")

    # --- Task assignment statuses (ordered, lowest first) ---
    ASSIGNMENT_STATUSES = _as_list(
        os.getenv("ASSIGNMENT_STATUSES"),
        ["PENDING", "IN_PROGRESS", "COMPLETED", "ACCEPTED"],
    )
    ASSIGNMENT_STATUS_STRICT = _as_bool(os.getenv("ASSIGNMENT_STATUS_STRICT", "0"))
    ASSIGNMENT_STATUS_COMPLETED = os.getenv("ASSIGNMENT_STATUS_COMPLETED", "COMPLETED")
    ASSIGNMENT_STATUS_ON_PAYMENT = os.getenv("ASSIGNMENT_STATUS_ON_PAYMENT", "ACCEPTED")
