"""
Relational data store for the Stocker tracker.

Wraps one SQLAlchemy engine and exposes the parameterized queries the
aggregator and the seeding helpers need. Works on SQLite locally and on
PostgreSQL when DATABASE_URL points at one.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

logger = logging.getLogger(__name__)

ALERT_TYPES = ("above", "below")


class StoreError(Exception):
    """Base class for data-store failures."""


class StoreUnavailable(StoreError):
    """The database could not be reached."""


class DuplicateWatchlistItem(StoreError):
    """The stock is already in the watchlist."""


# ----------------------------
# Schema
# ----------------------------
POSTGRES_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS users ("
    "id SERIAL PRIMARY KEY, "
    "name TEXT NOT NULL, "
    "email TEXT UNIQUE NOT NULL, "
    "password TEXT, "
    "google_id TEXT, "
    "created_at TIMESTAMPTZ DEFAULT NOW())",
    "CREATE TABLE IF NOT EXISTS stocks ("
    "id SERIAL PRIMARY KEY, "
    "symbol TEXT UNIQUE NOT NULL, "
    "name TEXT NOT NULL, "
    "current_price NUMERIC, "
    "change_percent NUMERIC, "
    "market_cap NUMERIC, "
    "volume BIGINT, "
    "sector TEXT, "
    "is_index BOOLEAN DEFAULT FALSE)",
    "CREATE TABLE IF NOT EXISTS lists ("
    "id SERIAL PRIMARY KEY, "
    "user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE, "
    "name TEXT NOT NULL, "
    "description TEXT, "
    "created_at TIMESTAMPTZ DEFAULT NOW())",
    "CREATE TABLE IF NOT EXISTS list_items ("
    "id SERIAL PRIMARY KEY, "
    "list_id INTEGER NOT NULL REFERENCES lists(id) ON DELETE CASCADE, "
    "stock_id INTEGER NOT NULL REFERENCES stocks(id), "
    "created_at TIMESTAMPTZ DEFAULT NOW(), "
    "UNIQUE (list_id, stock_id))",
    "CREATE TABLE IF NOT EXISTS portfolios ("
    "id SERIAL PRIMARY KEY, "
    "user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE, "
    "name TEXT NOT NULL, "
    "description TEXT, "
    "created_at TIMESTAMPTZ DEFAULT NOW())",
    "CREATE TABLE IF NOT EXISTS portfolio_stocks ("
    "id SERIAL PRIMARY KEY, "
    "portfolio_id INTEGER NOT NULL REFERENCES portfolios(id) ON DELETE CASCADE, "
    "stock_id INTEGER NOT NULL REFERENCES stocks(id), "
    "quantity NUMERIC NOT NULL CHECK (quantity > 0), "
    "purchase_price NUMERIC NOT NULL CHECK (purchase_price > 0), "
    "purchase_date DATE DEFAULT CURRENT_DATE, "
    "created_at TIMESTAMPTZ DEFAULT NOW())",
    "CREATE TABLE IF NOT EXISTS stock_alerts ("
    "id SERIAL PRIMARY KEY, "
    "user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE, "
    "stock_id INTEGER NOT NULL REFERENCES stocks(id), "
    "alert_type TEXT NOT NULL, "
    "price_target NUMERIC NOT NULL, "
    "created_at TIMESTAMPTZ DEFAULT NOW())",
)

SQLITE_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS users ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "name TEXT NOT NULL, "
    "email TEXT UNIQUE NOT NULL, "
    "password TEXT, "
    "google_id TEXT, "
    "created_at TEXT DEFAULT CURRENT_TIMESTAMP)",
    "CREATE TABLE IF NOT EXISTS stocks ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "symbol TEXT UNIQUE NOT NULL, "
    "name TEXT NOT NULL, "
    "current_price REAL, "
    "change_percent REAL, "
    "market_cap REAL, "
    "volume INTEGER, "
    "sector TEXT, "
    "is_index INTEGER DEFAULT 0)",
    "CREATE TABLE IF NOT EXISTS lists ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "user_id INTEGER NOT NULL, "
    "name TEXT NOT NULL, "
    "description TEXT, "
    "created_at TEXT DEFAULT CURRENT_TIMESTAMP, "
    "FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE)",
    "CREATE TABLE IF NOT EXISTS list_items ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "list_id INTEGER NOT NULL, "
    "stock_id INTEGER NOT NULL, "
    "created_at TEXT DEFAULT CURRENT_TIMESTAMP, "
    "UNIQUE (list_id, stock_id), "
    "FOREIGN KEY (list_id) REFERENCES lists (id) ON DELETE CASCADE, "
    "FOREIGN KEY (stock_id) REFERENCES stocks (id))",
    "CREATE TABLE IF NOT EXISTS portfolios ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "user_id INTEGER NOT NULL, "
    "name TEXT NOT NULL, "
    "description TEXT, "
    "created_at TEXT DEFAULT CURRENT_TIMESTAMP, "
    "FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE)",
    "CREATE TABLE IF NOT EXISTS portfolio_stocks ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "portfolio_id INTEGER NOT NULL, "
    "stock_id INTEGER NOT NULL, "
    "quantity REAL NOT NULL CHECK (quantity > 0), "
    "purchase_price REAL NOT NULL CHECK (purchase_price > 0), "
    "purchase_date TEXT DEFAULT CURRENT_DATE, "
    "created_at TEXT DEFAULT CURRENT_TIMESTAMP, "
    "FOREIGN KEY (portfolio_id) REFERENCES portfolios (id) ON DELETE CASCADE, "
    "FOREIGN KEY (stock_id) REFERENCES stocks (id))",
    "CREATE TABLE IF NOT EXISTS stock_alerts ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "user_id INTEGER NOT NULL, "
    "stock_id INTEGER NOT NULL, "
    "alert_type TEXT NOT NULL, "
    "price_target REAL NOT NULL, "
    "created_at TEXT DEFAULT CURRENT_TIMESTAMP, "
    "FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE, "
    "FOREIGN KEY (stock_id) REFERENCES stocks (id))",
)


def _sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _is_unique_violation(error: IntegrityError) -> bool:
    # 23505 is PostgreSQL's unique_violation; SQLite only reports it in the message
    if getattr(error.orig, "pgcode", None) == "23505":
        return True
    return "UNIQUE constraint failed" in str(error.orig)


class TrackerStore:
    """
    Data-store collaborator. Holds the engine only; every call opens and
    closes its own connection, so one instance is safe to share between
    requests.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.is_postgres = engine.url.get_backend_name() == "postgresql"
        if engine.url.get_backend_name() == "sqlite":
            # SQLite ignores REFERENCES / ON DELETE CASCADE unless asked per connection
            event.listen(engine, "connect", _sqlite_foreign_keys)

    @classmethod
    def from_url(cls, url: str) -> "TrackerStore":
        return cls(create_engine(url, future=True))

    @contextmanager
    def _connection(self, write: bool = False) -> Iterator[Connection]:
        try:
            ctx = self.engine.begin() if write else self.engine.connect()
            with ctx as conn:
                yield conn
        except OperationalError as e:
            logger.error("Database unavailable: %s", e.orig)
            raise StoreUnavailable(str(e.orig)) from e

    def _fetch_all(self, sql: str, params: Optional[dict] = None) -> list[dict]:
        with self._connection() as conn:
            rows = conn.execute(text(sql), params or {}).mappings().all()
        return [dict(r) for r in rows]

    def _insert(self, conn: Connection, sql: str, params: dict) -> int:
        if self.is_postgres:
            return conn.execute(text(sql + " RETURNING id"), params).scalar_one()
        return conn.execute(text(sql), params).lastrowid

    def init_db(self) -> None:
        """
        Create tables if they do not exist yet.
        """
        statements = POSTGRES_SCHEMA if self.is_postgres else SQLITE_SCHEMA
        with self._connection(write=True) as conn:
            for ddl in statements:
                conn.execute(text(ddl))
        logger.info("Schema ready (%s)", self.engine.url.get_backend_name())

    # ----------------------------
    # Reads
    # ----------------------------
    def watchlist_rows(self, user_id: int) -> list[dict]:
        """Watchlists left-joined with their items and stocks, one row per item."""
        return self._fetch_all(
            "SELECT l.id, l.name, l.created_at, "
            "li.id AS item_id, li.stock_id, "
            "s.symbol, s.name AS stock_name, s.current_price, s.change_percent "
            "FROM lists l "
            "LEFT JOIN list_items li ON l.id = li.list_id "
            "LEFT JOIN stocks s ON li.stock_id = s.id "
            "WHERE l.user_id = :uid "
            "ORDER BY l.created_at DESC, l.id DESC, li.created_at ASC, li.id ASC",
            {"uid": user_id},
        )

    def portfolios_for_user(self, user_id: int) -> list[dict]:
        return self._fetch_all(
            "SELECT id, user_id, name, description, created_at FROM portfolios "
            "WHERE user_id = :uid ORDER BY created_at DESC, id DESC",
            {"uid": user_id},
        )

    def holdings_for_portfolio(self, portfolio_id: int) -> list[dict]:
        return self._fetch_all(
            "SELECT ps.id, ps.portfolio_id, ps.stock_id, ps.quantity, "
            "ps.purchase_price, ps.purchase_date, "
            "s.symbol, s.name, s.current_price "
            "FROM portfolio_stocks ps "
            "JOIN stocks s ON ps.stock_id = s.id "
            "WHERE ps.portfolio_id = :pid "
            "ORDER BY ps.id",
            {"pid": portfolio_id},
        )

    def alerts_for_user(self, user_id: int) -> list[dict]:
        return self._fetch_all(
            "SELECT a.id, a.stock_id, a.alert_type, a.price_target, a.created_at, "
            "s.symbol, s.name, s.current_price "
            "FROM stock_alerts a "
            "JOIN stocks s ON a.stock_id = s.id "
            "WHERE a.user_id = :uid "
            "ORDER BY a.created_at DESC, a.id DESC",
            {"uid": user_id},
        )

    def index_stocks(self, limit: int) -> list[dict]:
        flag = True if self.is_postgres else 1
        return self._fetch_all(
            "SELECT * FROM stocks WHERE is_index = :flag "
            "ORDER BY market_cap DESC LIMIT :n",
            {"flag": flag, "n": limit},
        )

    def top_movers(self, limit: int, gainers: bool = True) -> list[dict]:
        """Risers only (gainers) or fallers only (losers), biggest move first."""
        if gainers:
            where, direction = "change_percent > 0", "DESC"
        else:
            where, direction = "change_percent < 0", "ASC"
        return self._fetch_all(
            f"SELECT * FROM stocks WHERE {where} "
            f"ORDER BY change_percent {direction}, symbol LIMIT :n",
            {"n": limit},
        )

    # ----------------------------
    # Writes (seeding / admin entry)
    # ----------------------------
    def create_user(self, name: str, email: str, password: Optional[str] = None) -> int:
        with self._connection(write=True) as conn:
            return self._insert(
                conn,
                "INSERT INTO users (name, email, password) VALUES (:name, :email, :pw)",
                {"name": name, "email": email.strip().lower(), "pw": password},
            )

    def add_stock(
        self,
        symbol: str,
        name: str,
        current_price: Optional[float] = None,
        change_percent: Optional[float] = None,
        market_cap: Optional[float] = None,
        volume: Optional[int] = None,
        sector: Optional[str] = None,
        is_index: bool = False,
    ) -> int:
        symbol = symbol.strip().upper()
        if not symbol:
            raise ValueError("Stock symbol is required.")
        flag = is_index if self.is_postgres else int(is_index)
        with self._connection(write=True) as conn:
            return self._insert(
                conn,
                "INSERT INTO stocks (symbol, name, current_price, change_percent, "
                "market_cap, volume, sector, is_index) "
                "VALUES (:symbol, :name, :price, :chg, :cap, :vol, :sector, :idx)",
                {
                    "symbol": symbol,
                    "name": name,
                    "price": current_price,
                    "chg": change_percent,
                    "cap": market_cap,
                    "vol": volume,
                    "sector": sector,
                    "idx": flag,
                },
            )

    def update_stock_price(
        self, stock_id: int, current_price: Optional[float], change_percent: Optional[float] = None
    ) -> None:
        with self._connection(write=True) as conn:
            conn.execute(
                text(
                    "UPDATE stocks SET current_price = :price, change_percent = :chg "
                    "WHERE id = :sid"
                ),
                {"price": current_price, "chg": change_percent, "sid": stock_id},
            )

    def create_watchlist(self, user_id: int, name: str, description: Optional[str] = None) -> int:
        name = (name or "").strip()
        if not name:
            raise ValueError("Watchlist name is required.")
        with self._connection(write=True) as conn:
            return self._insert(
                conn,
                "INSERT INTO lists (user_id, name, description) VALUES (:uid, :name, :desc)",
                {"uid": user_id, "name": name, "desc": description},
            )

    def add_watchlist_item(self, list_id: int, stock_id: int) -> int:
        """Add a stock to a watchlist; a stock appears at most once per list."""
        with self._connection(write=True) as conn:
            existing = conn.execute(
                text("SELECT id FROM list_items WHERE list_id = :lid AND stock_id = :sid"),
                {"lid": list_id, "sid": stock_id},
            ).first()
            if existing is not None:
                raise DuplicateWatchlistItem(
                    f"Stock {stock_id} is already in watchlist {list_id}."
                )
            try:
                return self._insert(
                    conn,
                    "INSERT INTO list_items (list_id, stock_id) VALUES (:lid, :sid)",
                    {"lid": list_id, "sid": stock_id},
                )
            except IntegrityError as e:
                # Foreign-key failures (unknown list or stock) propagate as-is
                if not _is_unique_violation(e):
                    raise
                # Lost a race with a concurrent insert of the same pair
                raise DuplicateWatchlistItem(
                    f"Stock {stock_id} is already in watchlist {list_id}."
                ) from e

    def create_portfolio(self, user_id: int, name: str, description: Optional[str] = None) -> int:
        name = (name or "").strip()
        if not name:
            raise ValueError("Portfolio name is required.")
        with self._connection(write=True) as conn:
            return self._insert(
                conn,
                "INSERT INTO portfolios (user_id, name, description) "
                "VALUES (:uid, :name, :desc)",
                {"uid": user_id, "name": name, "desc": description},
            )

    def add_holding(
        self,
        portfolio_id: int,
        stock_id: int,
        quantity: float,
        purchase_price: float,
        purchase_date: Optional[date] = None,
    ) -> int:
        """Record one lot. Lots of the same stock are kept separate."""
        quantity_val = float(quantity)
        price_val = float(purchase_price)
        if quantity_val <= 0 or price_val <= 0:
            raise ValueError("Quantity and purchase price must be positive numbers.")
        purchase_date = purchase_date or date.today()
        with self._connection(write=True) as conn:
            return self._insert(
                conn,
                "INSERT INTO portfolio_stocks "
                "(portfolio_id, stock_id, quantity, purchase_price, purchase_date) "
                "VALUES (:pid, :sid, :qty, :price, :pdate)",
                {
                    "pid": portfolio_id,
                    "sid": stock_id,
                    "qty": quantity_val,
                    "price": price_val,
                    "pdate": purchase_date.isoformat(),
                },
            )

    def create_alert(self, user_id: int, stock_id: int, alert_type: str, price_target: float) -> int:
        alert_type = (alert_type or "").strip().lower()
        if alert_type not in ALERT_TYPES:
            raise ValueError(f"Alert type must be one of {', '.join(ALERT_TYPES)}.")
        target = float(price_target)
        if target <= 0:
            raise ValueError("Price target must be a positive number.")
        with self._connection(write=True) as conn:
            return self._insert(
                conn,
                "INSERT INTO stock_alerts (user_id, stock_id, alert_type, price_target) "
                "VALUES (:uid, :sid, :atype, :target)",
                {"uid": user_id, "sid": stock_id, "atype": alert_type, "target": target},
            )
