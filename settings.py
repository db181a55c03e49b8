"""
Runtime configuration for the Stocker tracker.

Values come from the environment. Supports SQLite locally and PostgreSQL
when DATABASE_URL is set (e.g. on Render).
"""

from __future__ import annotations

import json
import logging
import os
import sys

# Local SQLite path (used only if DATABASE_URL is not set)
DATABASE = os.environ.get(
    "TRACKER_DB_PATH", os.path.join(os.path.dirname(__file__), "stocker.db")
)

SECRET_KEY = os.environ.get("SECRET_KEY", "stocker-secret")

MARKET_MOVERS_LIMIT = int(os.environ.get("MARKET_MOVERS_LIMIT", "5"))
MARKET_INDEX_LIMIT = int(os.environ.get("MARKET_INDEX_LIMIT", "10"))


def database_url() -> str:
    """
    SQLAlchemy URL for the data store.
    Normalizes the legacy postgres:// scheme for SQLAlchemy 2.x.
    """
    db_url = os.environ.get("DATABASE_URL")
    if db_url:
        if db_url.startswith("postgres://"):
            db_url = db_url.replace("postgres://", "postgresql://", 1)
        return db_url
    return f"sqlite:///{DATABASE}"


class JsonFormatter(logging.Formatter):
    """Single-line JSON records for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    """Configure the root logger: level from LOG_LEVEL, JSON when LOG_JSON is set."""
    level_name = (os.environ.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    use_json = os.environ.get("LOG_JSON", "").lower() in ("1", "true", "yes")

    root = logging.getLogger()
    root.setLevel(level)
    # Avoid duplicate handlers when the app factory runs more than once
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
    root.addHandler(handler)
