# backend/tradeflow/config.py
from __future__ import annotations
import json
import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tradeflow.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///tradeflow.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bidding window for new orders, enforced by the expire-bids sweep
    BID_WINDOW_MINUTES = _env_int("BID_WINDOW_MINUTES", 30)

    # Vendor routing
    ROUTING_TIMEOUT_SECONDS = _env_int("ROUTING_TIMEOUT_SECONDS", 600)
    ROUTING_MAX_CANDIDATES = _env_int("ROUTING_MAX_CANDIDATES", 10)

    # Credit terms applied when an account is created without explicit terms
    DEFAULT_CREDIT_TERMS_DAYS = _env_int("DEFAULT_CREDIT_TERMS_DAYS", 30)

    # Canonical offer scoring weights (must sum to 1.0)
    SCORING_WEIGHTS = json.loads(os.environ.get("SCORING_WEIGHTS", "null")) or {
        "price": 0.40,
        "eta": 0.25,
        "reliability": 0.20,
        "rating": 0.10,
        "stock_confirmed": 0.05,
    }

    # "log" writes messages to the application logger; "disabled" drops them
    MESSAGING_GATEWAY = os.environ.get("MESSAGING_GATEWAY", "log")
    NOTIFICATION_MAX_ATTEMPTS = _env_int("NOTIFICATION_MAX_ATTEMPTS", 5)

    # Unit-of-work retries on lock timeouts / deadlocks
    TX_RETRY_ATTEMPTS = _env_int("TX_RETRY_ATTEMPTS", 3)
