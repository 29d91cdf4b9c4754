# backend/tubeshop/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tubeshop.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///tubeshop.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Public storefront URL used in emails and gateway redirects
    SITE_URL = os.environ.get("SITE_URL", "http://localhost:3000")

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_CURRENCY = os.environ.get("STRIPE_CURRENCY", "vnd")

    # Cron endpoints require "Authorization: Bearer <CRON_SECRET>"
    CRON_SECRET = os.environ.get("CRON_SECRET")

    # Guest order tracking
    ORDER_TRACKING_TOKEN_PEPPER = os.environ.get("ORDER_TRACKING_TOKEN_PEPPER", "")
    TRACKING_TOKEN_TTL_DAYS = _int_env("TRACKING_TOKEN_TTL_DAYS", 7)
    TRACK_RATE_LIMIT_MAX = _int_env("TRACK_RATE_LIMIT_MAX", 10)
    TRACK_RATE_LIMIT_WINDOW_SECONDS = _int_env("TRACK_RATE_LIMIT_WINDOW_SECONDS", 15 * 60)

    # Email (Resend HTTP API)
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com/emails")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "orders@tubeshop.local")
    ADMIN_NOTIFICATION_EMAIL = os.environ.get("ADMIN_NOTIFICATION_EMAIL")

    # Bank transfer proof files
    DEPOSIT_PROOF_UPLOAD_DIR = os.environ.get("DEPOSIT_PROOF_UPLOAD_DIR", "instance/deposit-proofs")
    DEPOSIT_PROOF_PUBLIC_URL = os.environ.get("DEPOSIT_PROOF_PUBLIC_URL", "/media/deposit-proofs")

    # VietQR for bank transfer deposits (BIN or bank key, e.g. "vietcombank")
    VIETQR_BANK_BIN = os.environ.get("VIETQR_BANK_BIN", "970436")
    VIETQR_ACCOUNT_NUMBER = os.environ.get("VIETQR_ACCOUNT_NUMBER")
    VIETQR_ACCOUNT_NAME = os.environ.get("VIETQR_ACCOUNT_NAME", "TUBESHOP")
    VIETQR_IMAGE_BASE_URL = os.environ.get("VIETQR_IMAGE_BASE_URL", "https://img.vietqr.io/image")
    VIETQR_TEMPLATE = os.environ.get("VIETQR_TEMPLATE", "compact2")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CRON_SECRET = "test-cron-secret"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test_dummy"
    ORDER_TRACKING_TOKEN_PEPPER = "test-pepper"
    ADMIN_NOTIFICATION_EMAIL = "admin@tubeshop.local"
    VIETQR_ACCOUNT_NUMBER = "0123456789"
    VIETQR_ACCOUNT_NAME = "Cửa hàng Đèn Tube"
