# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Large stock-take approvals can hold the write lock for a while
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {"timeout": 30} if SQLALCHEMY_DATABASE_URI.startswith("sqlite") else {},
    }

    POSTING_RETRY_ATTEMPTS = int(os.environ.get("POSTING_RETRY_ATTEMPTS", "3"))
    POSTING_RETRY_BACKOFF = float(os.environ.get("POSTING_RETRY_BACKOFF", "0.1"))

    # Audit/notification jobs run after commit; inline mode is for tests and CLI use
    DISPATCH_INLINE = os.environ.get("DISPATCH_INLINE", "false").lower() == "true"
    DISPATCH_QUEUE_SIZE = int(os.environ.get("DISPATCH_QUEUE_SIZE", "1000"))

    BATCH_MAX_SIZE = 50

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Browser origins allowed to call the API (comma separated)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if o.strip()
    )
