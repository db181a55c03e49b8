"""
Stocker Tracker
---------------

Flask app that renders a user's watchlists, portfolios (with P/L) and
price alerts, and serves the same view models as JSON. Supports SQLite
locally and PostgreSQL on Render.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Callable, Optional

from flask import Flask, abort, flash, g, jsonify, render_template, session

import settings
from aggregator import PortfolioAggregator
from store import StoreError, TrackerStore

logger = logging.getLogger(__name__)

EMPTY_OVERVIEW = {
    "total_value": 0.0,
    "total_cost": 0.0,
    "total_profit_loss": 0.0,
    "total_profit_loss_percent": 0.0,
    "top_holding": None,
}
EMPTY_MARKET = {"indices": [], "top_gainers": [], "top_losers": []}


def session_user_id() -> Optional[int]:
    """Default authentication provider: the user id stored in the session."""
    return session.get("user_id")


def create_app(
    store: Optional[TrackerStore] = None,
    auth_provider: Optional[Callable[[], Optional[int]]] = None,
) -> Flask:
    app = Flask(__name__)
    app.secret_key = settings.SECRET_KEY

    if store is None:
        settings.configure_logging()
        store = TrackerStore.from_url(settings.database_url())
        # Ensure tables exist before the first request
        store.init_db()

    aggregator = PortfolioAggregator(store)
    current_user_id = auth_provider or session_user_id

    def login_required(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user_id = current_user_id()
            if user_id is None:
                abort(401)
            g.user_id = user_id
            return view(*args, **kwargs)

        return wrapped

    @app.route("/healthz")
    def healthz():
        # Health endpoint for uptime monitors, no DB access
        return "ok", 200

    @app.route("/dashboard")
    @login_required
    def dashboard():
        """Watchlists, portfolio totals, alerts and market movers."""
        try:
            data = aggregator.load_dashboard(g.user_id)
        except StoreError:
            logger.exception("Dashboard load failed for user %s", g.user_id)
            flash("Error loading dashboard data.", "danger")
            data = {
                "watchlists": [],
                "portfolios": [],
                "overview": EMPTY_OVERVIEW,
                "market": EMPTY_MARKET,
                "alerts": [],
            }
        return render_template("dashboard.html", **data)

    @app.route("/portfolios")
    @login_required
    def portfolios():
        """All portfolios with holdings and P/L."""
        try:
            rows = aggregator.load_portfolios_with_metrics(g.user_id)
        except StoreError:
            logger.exception("Portfolio load failed for user %s", g.user_id)
            flash("Error loading portfolios.", "danger")
            rows = []
        return render_template("portfolios.html", portfolios=rows)

    def _json_view(loader: Callable, *args):
        try:
            return jsonify(loader(*args))
        except StoreError:
            logger.exception("API load failed (%s)", loader.__name__)
            return jsonify({"success": False, "message": "Data store unavailable"}), 503

    @app.route("/api/watchlists")
    @login_required
    def api_watchlists():
        return _json_view(aggregator.load_watchlists, g.user_id)

    @app.route("/api/portfolios")
    @login_required
    def api_portfolios():
        return _json_view(aggregator.load_portfolios_with_metrics, g.user_id)

    @app.route("/api/dashboard")
    @login_required
    def api_dashboard():
        return _json_view(aggregator.load_dashboard, g.user_id)

    @app.route("/api/alerts")
    @login_required
    def api_alerts():
        return _json_view(aggregator.load_alerts, g.user_id)

    @app.route("/api/market/overview")
    def api_market_overview():
        return _json_view(aggregator.load_market_overview)

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
