# backend/chariot/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/chariot.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///chariot.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment gateway
    PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "stripe")
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "usd")
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

    # Background reconciliation of pending transactions
    RECONCILE_PENDING_AFTER_SECONDS = int(os.environ.get("RECONCILE_PENDING_AFTER_SECONDS", "300"))
    RECONCILE_BATCH_SIZE = int(os.environ.get("RECONCILE_BATCH_SIZE", "100"))

    DEFAULT_PAGE_SIZE = 50
    MAX_PAGE_SIZE = 200

    # Browser origins allowed to call the API (comma separated)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if o.strip()
    )
