"""
Portfolio / watchlist aggregation.

Turns raw store rows into the view models the dashboard and the JSON API
render: watchlists grouped with their stocks, and portfolios annotated
with value, cost basis and profit/loss. Nothing here is persisted; every
call recomputes from the store.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

import settings

logger = logging.getLogger(__name__)


def _as_float(value: Any) -> Optional[float]:
    # Postgres NUMERIC columns come back as Decimal
    return float(value) if value is not None else None


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, date):
        # also covers datetime
        return value.isoformat()
    return value


def plain_row(row: dict) -> dict:
    """
    Copy a store row with JSON-stable values: Decimal becomes float and
    dates/datetimes become ISO-8601 strings, whatever the backend.
    """
    return {key: _plain(value) for key, value in row.items()}


def percent_change(gain: float, base: float) -> float:
    """gain / base as a percentage; 0 when there is no positive base."""
    if base > 0:
        return (gain / base) * 100
    return 0.0


def group_watchlist_rows(rows: Iterable[dict]) -> list[dict]:
    """
    Fold joined watchlist/item rows into one record per watchlist.

    Rows are grouped by watchlist id, not by adjacency, so interleaved rows
    still land in the right list. Watchlists keep first-seen order and so do
    their stocks. A row with no item id only establishes the watchlist.
    """
    grouped: dict[Any, dict] = {}
    for row in rows:
        wl = grouped.get(row["id"])
        if wl is None:
            wl = {
                "id": row["id"],
                "name": row["name"],
                "created_at": _plain(row["created_at"]),
                "stocks": [],
            }
            grouped[row["id"]] = wl

        if row.get("item_id") is None:
            continue
        wl["stocks"].append(
            {
                "id": row["stock_id"],
                "symbol": row["symbol"],
                "name": row["stock_name"],
                "current_price": _as_float(row["current_price"]),
                "change_percent": _as_float(row["change_percent"]),
            }
        )
    return list(grouped.values())


def holding_metrics(row: dict) -> dict:
    """Annotate one holding row with current value, cost basis and P/L."""
    quantity = float(row["quantity"])
    purchase_price = float(row["purchase_price"])
    current_price = _as_float(row.get("current_price"))

    if current_price is None:
        logger.debug(
            "No current price for %s (holding %s); valuing at 0",
            row.get("symbol"),
            row.get("id"),
        )
        current_value = 0.0
    else:
        current_value = quantity * current_price

    cost_basis = quantity * purchase_price
    profit_loss = current_value - cost_basis

    holding = plain_row(row)
    holding.update(
        {
            "quantity": quantity,
            "purchase_price": purchase_price,
            "current_price": current_price,
            "current_value": current_value,
            "cost_basis": cost_basis,
            "profit_loss": profit_loss,
            "profit_loss_percent": percent_change(profit_loss, cost_basis),
        }
    )
    return holding


def summarize_holdings(holdings: list[dict]) -> dict:
    """Totals over already-annotated holdings."""
    total_value = sum(h["current_value"] for h in holdings)
    total_cost = sum(h["cost_basis"] for h in holdings)
    total_profit_loss = total_value - total_cost
    return {
        "total_value": total_value,
        "total_cost": total_cost,
        "total_profit_loss": total_profit_loss,
        "total_profit_loss_percent": percent_change(total_profit_loss, total_cost),
    }


def alert_triggered(alert_type: str, current_price: Optional[float], target: float) -> bool:
    if current_price is None:
        return False
    if alert_type == "above":
        return current_price >= target
    if alert_type == "below":
        return current_price <= target
    return False


class PortfolioAggregator:
    """
    Read-only view-model builder over a store.

    The store is any object exposing the read methods of store.TrackerStore.
    Store failures propagate to the caller untouched.
    """

    def __init__(self, store, movers_limit: Optional[int] = None, index_limit: Optional[int] = None):
        self.store = store
        self.movers_limit = settings.MARKET_MOVERS_LIMIT if movers_limit is None else movers_limit
        self.index_limit = settings.MARKET_INDEX_LIMIT if index_limit is None else index_limit

    def load_watchlists(self, user_id: int) -> list[dict]:
        """User's watchlists, newest first, each with its stocks in insertion order."""
        return group_watchlist_rows(self.store.watchlist_rows(user_id))

    def load_portfolios_with_metrics(self, user_id: int) -> list[dict]:
        """User's portfolios, newest first, with per-holding and per-portfolio metrics."""
        portfolios = []
        for p in self.store.portfolios_for_user(user_id):
            holdings = [holding_metrics(h) for h in self.store.holdings_for_portfolio(p["id"])]
            portfolio = plain_row(p)
            portfolio["holdings"] = holdings
            portfolio.update(summarize_holdings(holdings))
            portfolios.append(portfolio)
        return portfolios

    def load_portfolio_overview(self, user_id: int, portfolios: Optional[list[dict]] = None) -> dict:
        """
        Totals across every portfolio the user owns, plus the single largest
        holding by current value.
        """
        if portfolios is None:
            portfolios = self.load_portfolios_with_metrics(user_id)
        holdings = [h for p in portfolios for h in p["holdings"]]

        overview = summarize_holdings(holdings)
        top = max(holdings, key=lambda h: h["current_value"], default=None)
        if top is not None and top["current_value"] <= 0:
            # Nothing priced yet; no holding is meaningfully the largest
            top = None
        overview["top_holding"] = (
            {
                "symbol": top["symbol"],
                "name": top["name"],
                "current_price": top["current_price"],
                "current_value": top["current_value"],
            }
            if top is not None
            else None
        )
        return overview

    def load_market_overview(self) -> dict:
        return {
            "indices": [plain_row(r) for r in self.store.index_stocks(self.index_limit)],
            "top_gainers": [
                plain_row(r) for r in self.store.top_movers(self.movers_limit, gainers=True)
            ],
            "top_losers": [
                plain_row(r) for r in self.store.top_movers(self.movers_limit, gainers=False)
            ],
        }

    def load_alerts(self, user_id: int) -> list[dict]:
        alerts = []
        for row in self.store.alerts_for_user(user_id):
            alert = plain_row(row)
            alert["current_price"] = _as_float(row["current_price"])
            alert["price_target"] = float(row["price_target"])
            alert["triggered"] = alert_triggered(
                row["alert_type"], alert["current_price"], alert["price_target"]
            )
            alerts.append(alert)
        return alerts

    def load_dashboard(self, user_id: int) -> dict:
        portfolios = self.load_portfolios_with_metrics(user_id)
        return {
            "watchlists": self.load_watchlists(user_id),
            "portfolios": portfolios,
            "overview": self.load_portfolio_overview(user_id, portfolios),
            "market": self.load_market_overview(),
            "alerts": self.load_alerts(user_id),
        }
