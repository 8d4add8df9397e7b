# backend/tillbook/config.py
from __future__ import annotations
import os
from decimal import Decimal

from sqlalchemy.pool import StaticPool


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tillbook.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location (e.g. postgresql+psycopg2://...)
        "sqlite:///tillbook.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Outbox dispatcher
    OUTBOX_BATCH_SIZE = int(os.environ.get("OUTBOX_BATCH_SIZE", "100"))
    OUTBOX_POLL_INTERVAL_SECONDS = float(os.environ.get("OUTBOX_POLL_INTERVAL_SECONDS", "1.0"))

    # Fallbacks used when a tenant has no policy row
    CASH_VARIANCE_REVIEW_THRESHOLD_USD = Decimal(
        os.environ.get("CASH_VARIANCE_REVIEW_THRESHOLD_USD", "5.00")
    )
    INVENTORY_SUBTRACT_ON_FINALIZE = _env_bool("INVENTORY_SUBTRACT_ON_FINALIZE", True)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    # One shared connection so every Session sees the same in-memory database
    SQLALCHEMY_ENGINE_OPTIONS = {
        "poolclass": StaticPool,
        "connect_args": {"check_same_thread": False},
    }
