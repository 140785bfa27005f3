import os
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

APP_NAME = "Checkout & Affiliates API"
APP_VERSION = "1.0.0"

DATABASE_URL = os.getenv("DATABASE_URL")

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS", "http://localhost:5173,http://localhost:5174,http://localhost:3000"
    ).split(",")
    if origin.strip()
]

DEFAULT_COMMISSION_RATE_PERCENT = Decimal("20.00")

# Smallest chargeable amount in minor units, per currency
DEFAULT_MINIMUM_AMOUNTS = {
    "BRL": 50,
    "USD": 50,
    "EUR": 50,
    "GBP": 30,
}


def get_webhook_secret():
    return os.getenv("STRIPE_WEBHOOK_SECRET") or None


def get_minimum_amounts():
    """Minimum minor-unit amounts per currency, overridable via STRIPE_MINIMUM_AMOUNTS (JSON)."""
    minimums = dict(DEFAULT_MINIMUM_AMOUNTS)
    raw = os.getenv("STRIPE_MINIMUM_AMOUNTS")
    if raw:
        try:
            overrides = json.loads(raw)
        except ValueError:
            raise RuntimeError("STRIPE_MINIMUM_AMOUNTS must be a JSON object, e.g. {\"BRL\": 50}")
        minimums.update({str(k).upper(): int(v) for k, v in overrides.items()})
    return minimums


def get_commission_rate_override():
    """Deployment-level commission rate (percent) or None when unset or not numeric."""
    raw = os.getenv("AFFILIATE_COMMISSION_RATE")
    if raw is None or not raw.strip():
        return None
    try:
        rate = Decimal(raw.strip())
    except InvalidOperation:
        return None
    if not rate.is_finite():
        return None
    return rate
