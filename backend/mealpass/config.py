# backend/mealpass/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


class Config:
    # Optional "SECRET_KEY", with default dev key. Also signs operator sessions.
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/mealpass.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///mealpass.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Service calendar: every day boundary is computed in this civil timezone
    SERVICE_TIMEZONE = os.environ.get("SERVICE_TIMEZONE", "America/Los_Angeles")
    SERVICE_WEEKDAYS = (0, 1, 2, 3, 4)  # Monday..Friday

    # Signing keys (PEM text, or base64-encoded PEM for single-line env vars)
    MEAL_TOKEN_PRIVATE_KEY = os.environ.get("MEAL_TOKEN_PRIVATE_KEY")
    MEAL_TOKEN_PUBLIC_KEY = os.environ.get("MEAL_TOKEN_PUBLIC_KEY")
    KIOSK_PRIVATE_KEY = os.environ.get("KIOSK_PRIVATE_KEY")
    KIOSK_PUBLIC_KEY = os.environ.get("KIOSK_PUBLIC_KEY")

    MEAL_TOKEN_ISSUER = os.environ.get("MEAL_TOKEN_ISSUER", "mealpass-kiosk")
    KIOSK_ISSUER = os.environ.get("KIOSK_ISSUER", "mealpass-admin")
    OPERATOR_ISSUER = os.environ.get("OPERATOR_ISSUER", "mealpass-operator")

    # Shared secret for scheduler-triggered endpoints
    CRON_SECRET = os.environ.get("CRON_SECRET")

    # Sessions
    DEVICE_SESSION_LIFETIME_DAYS = int(os.environ.get("DEVICE_SESSION_LIFETIME_DAYS", "30"))
    OPERATOR_SESSION_LIFETIME_HOURS = int(os.environ.get("OPERATOR_SESSION_LIFETIME_HOURS", "8"))
    OPERATOR_MAGIC_LINK_MINUTES = int(os.environ.get("OPERATOR_MAGIC_LINK_MINUTES", "15"))
    OPERATOR_EMAILS = _env_list("OPERATOR_EMAILS")
    OPERATOR_LOGIN_URL = os.environ.get("OPERATOR_LOGIN_URL", "http://localhost:5173/admin/auth/verify")
    SESSION_FAIL_OPEN = _env_bool("SESSION_FAIL_OPEN", True)

    # Rate limits (requests per window)
    KIOSK_REDEEM_RATE_LIMIT = int(os.environ.get("KIOSK_REDEEM_RATE_LIMIT", "10"))
    KIOSK_REDEEM_RATE_WINDOW_SECONDS = int(os.environ.get("KIOSK_REDEEM_RATE_WINDOW_SECONDS", "60"))
    WEBHOOK_RATE_LIMIT = int(os.environ.get("WEBHOOK_RATE_LIMIT", "100"))
    WEBHOOK_RATE_WINDOW_SECONDS = int(os.environ.get("WEBHOOK_RATE_WINDOW_SECONDS", "60"))
    MAGIC_LINK_RATE_LIMIT = int(os.environ.get("MAGIC_LINK_RATE_LIMIT", "5"))
    MAGIC_LINK_RATE_WINDOW_SECONDS = int(os.environ.get("MAGIC_LINK_RATE_WINDOW_SECONDS", "900"))

    # Outbound notifications: "telegram", "email" or "log"
    NOTIFY_BACKEND = os.environ.get("NOTIFY_BACKEND", "log")
    NOTIFY_TIMEOUT_SECONDS = float(os.environ.get("NOTIFY_TIMEOUT_SECONDS", "10"))
    TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")
    TELEGRAM_API_BASE = os.environ.get("TELEGRAM_API_BASE", "https://api.telegram.org")
    EMAIL_API_KEY = os.environ.get("EMAIL_API_KEY")
    EMAIL_API_URL = os.environ.get("EMAIL_API_URL", "https://api.resend.com/emails")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "Meal Pass <meals@example.com>")
    ADMIN_ALERT_CHAT_ID = os.environ.get("ADMIN_ALERT_CHAT_ID")

    # Issuance job
    ISSUANCE_ERROR_ALERT_THRESHOLD = int(os.environ.get("ISSUANCE_ERROR_ALERT_THRESHOLD", "0"))
    ISSUANCE_SLOW_RUN_SECONDS = float(os.environ.get("ISSUANCE_SLOW_RUN_SECONDS", "20"))

    # Billing webhooks
    BILLING_WEBHOOK_SECRET = os.environ.get("BILLING_WEBHOOK_SECRET")

    # Chat bot webhook (sent by Telegram as X-Telegram-Bot-Api-Secret-Token)
    TELEGRAM_WEBHOOK_SECRET = os.environ.get("TELEGRAM_WEBHOOK_SECRET")
