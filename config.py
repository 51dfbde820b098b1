"""Environment configuration for the trial activation pipeline.

All settings come from the process environment (a local .env is loaded first).
Values are read at call time so tests can patch os.environ freely.

Usage:
    from config import cron_secret, product_api_url
"""
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_PRODUCT_API_URL = "https://app.autosalvageautomation.com"
DEFAULT_SENDER_EMAIL = "no-reply@autosalvageautomation.com"
DEFAULT_SENDER_NAME = "Junk Car Calculator"


def _get(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name, "").strip()
    return value or default


def database_url() -> Optional[str]:
    return _get("DATABASE_URL")


def pool_settings() -> dict:
    """Connection pool sizing for the async engine."""
    return {
        "pool_size": int(_get("DB_POOL_SIZE", "5")),
        "max_overflow": int(_get("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(_get("DB_POOL_TIMEOUT", "30")),
    }


def cron_secret() -> Optional[str]:
    return _get("CRON_SECRET")


def product_api_url() -> str:
    return _get("PRODUCT_API_URL", DEFAULT_PRODUCT_API_URL).rstrip("/")


def product_api_key() -> Optional[str]:
    return _get("PRODUCT_API_KEY")


def brevo_api_key() -> Optional[str]:
    return _get("BREVO_API_KEY")


def sender() -> dict:
    return {
        "email": _get("DEFAULT_SENDER_EMAIL", DEFAULT_SENDER_EMAIL),
        "name": _get("DEFAULT_SENDER_NAME", DEFAULT_SENDER_NAME),
    }


def twilio_credentials() -> Optional[dict]:
    """Return Twilio credentials, or None when SMS is not configured."""
    sid = _get("TWILIO_ACCOUNT_SID")
    token = _get("TWILIO_AUTH_TOKEN")
    from_number = _get("TWILIO_FROM_NUMBER")
    if not (sid and token and from_number):
        return None
    return {"account_sid": sid, "auth_token": token, "from_number": from_number}


def scoring_baseline_hours() -> float:
    return float(_get("SCORING_BASELINE_HOURS", "40"))


def log_level() -> str:
    return _get("LOG_LEVEL", "INFO").upper()
