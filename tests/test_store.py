"""Store queries and aggregation against a real SQLite database."""

from datetime import date

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from aggregator import PortfolioAggregator
from store import DuplicateWatchlistItem, StoreUnavailable, TrackerStore


@pytest.fixture
def stocks(store):
    return {
        "AAPL": store.add_stock("aapl", "Apple Inc.", current_price=190.0, change_percent=1.2),
        "MSFT": store.add_stock("MSFT", "Microsoft Corp.", current_price=410.0, change_percent=-0.8),
        "NEW": store.add_stock("NEW", "Unpriced Listing"),
    }


def test_symbol_is_upper_cased(store, stocks):
    rows = store.top_movers(5, gainers=True)
    assert rows[0]["symbol"] == "AAPL"


def test_watchlist_stocks_in_insertion_order(store, user_id, stocks):
    list_id = store.create_watchlist(user_id, "My List")
    store.add_watchlist_item(list_id, stocks["AAPL"])
    store.add_watchlist_item(list_id, stocks["MSFT"])

    [wl] = PortfolioAggregator(store).load_watchlists(user_id)
    assert wl["name"] == "My List"
    assert [s["symbol"] for s in wl["stocks"]] == ["AAPL", "MSFT"]


def test_watchlists_newest_first_and_empty_kept(store, user_id, stocks):
    first = store.create_watchlist(user_id, "First")
    store.add_watchlist_item(first, stocks["MSFT"])
    second = store.create_watchlist(user_id, "Second")

    result = PortfolioAggregator(store).load_watchlists(user_id)
    assert [w["id"] for w in result] == [second, first]
    assert result[0]["stocks"] == []
    assert len(result[1]["stocks"]) == 1


def test_watchlists_are_scoped_to_owner(store, user_id, stocks):
    other = store.create_user("Other", "other@example.com")
    store.create_watchlist(other, "Not mine")
    assert PortfolioAggregator(store).load_watchlists(user_id) == []


def test_duplicate_watchlist_item_rejected(store, user_id, stocks):
    list_id = store.create_watchlist(user_id, "Dupes")
    store.add_watchlist_item(list_id, stocks["AAPL"])
    with pytest.raises(DuplicateWatchlistItem):
        store.add_watchlist_item(list_id, stocks["AAPL"])

    [wl] = PortfolioAggregator(store).load_watchlists(user_id)
    assert len(wl["stocks"]) == 1


def test_blank_watchlist_name_rejected(store, user_id):
    with pytest.raises(ValueError):
        store.create_watchlist(user_id, "   ")


@pytest.mark.parametrize("quantity, price", [(0, 10), (5, 0), (-1, 10)])
def test_holding_requires_positive_numbers(store, user_id, stocks, quantity, price):
    pid = store.create_portfolio(user_id, "Tech")
    with pytest.raises(ValueError):
        store.add_holding(pid, stocks["AAPL"], quantity, price)


def test_lots_of_same_stock_stay_separate(store, user_id, stocks):
    pid = store.create_portfolio(user_id, "Tech")
    store.add_holding(pid, stocks["AAPL"], 10, 100, date(2023, 1, 5))
    store.add_holding(pid, stocks["AAPL"], 5, 150, date(2023, 6, 1))

    [p] = PortfolioAggregator(store).load_portfolios_with_metrics(user_id)
    assert len(p["holdings"]) == 2
    assert p["holdings"][0]["purchase_date"] == "2023-01-05"
    assert p["total_cost"] == pytest.approx(1000 + 750)
    assert p["total_value"] == pytest.approx(15 * 190)


def test_unpriced_holding_does_not_break_portfolio(store, user_id, stocks):
    pid = store.create_portfolio(user_id, "Speculative")
    store.add_holding(pid, stocks["NEW"], 100, 1.5)
    store.add_holding(pid, stocks["MSFT"], 1, 400)

    [p] = PortfolioAggregator(store).load_portfolios_with_metrics(user_id)
    new, msft = p["holdings"]
    assert new["current_price"] is None
    assert new["current_value"] == 0
    assert msft["current_value"] == pytest.approx(410)
    assert p["total_value"] == pytest.approx(410)
    assert p["total_cost"] == pytest.approx(550)


def test_price_update_is_reflected(store, user_id, stocks):
    pid = store.create_portfolio(user_id, "Tech")
    store.add_holding(pid, stocks["NEW"], 10, 2)
    store.update_stock_price(stocks["NEW"], 3.0, 50.0)

    [p] = PortfolioAggregator(store).load_portfolios_with_metrics(user_id)
    assert p["total_profit_loss"] == pytest.approx(10)
    assert p["total_profit_loss_percent"] == pytest.approx(50)


def test_movers_skip_unpriced_stocks(store, stocks):
    gainers = store.top_movers(5, gainers=True)
    losers = store.top_movers(5, gainers=False)
    assert [s["symbol"] for s in gainers] == ["AAPL"]
    assert [s["symbol"] for s in losers] == ["MSFT"]


def test_gainers_only_rise_and_losers_only_fall(store):
    store.add_stock("UP1", "Up One", current_price=10, change_percent=3.0)
    store.add_stock("UP2", "Up Two", current_price=10, change_percent=1.0)
    store.add_stock("FLAT", "Flat", current_price=10, change_percent=0.0)
    store.add_stock("DN", "Down", current_price=10, change_percent=-2.0)

    assert [s["symbol"] for s in store.top_movers(5, gainers=True)] == ["UP1", "UP2"]
    assert [s["symbol"] for s in store.top_movers(5, gainers=False)] == ["DN"]


def test_index_stocks_by_market_cap(store):
    store.add_stock("^GSPC", "S&P 500", market_cap=40e12, is_index=True)
    store.add_stock("^IXIC", "Nasdaq Composite", market_cap=25e12, is_index=True)
    store.add_stock("TSLA", "Tesla", market_cap=700e9)

    assert [s["symbol"] for s in store.index_stocks(10)] == ["^GSPC", "^IXIC"]


def test_alerts_round_trip_through_aggregator(store, user_id, stocks):
    store.create_alert(user_id, stocks["AAPL"], "above", 180)
    store.create_alert(user_id, stocks["MSFT"], "Below", 400)

    alerts = PortfolioAggregator(store).load_alerts(user_id)
    by_symbol = {a["symbol"]: a for a in alerts}
    assert by_symbol["AAPL"]["triggered"] is True
    assert by_symbol["MSFT"]["alert_type"] == "below"
    assert by_symbol["MSFT"]["triggered"] is False


def test_unknown_alert_type_rejected(store, user_id, stocks):
    with pytest.raises(ValueError):
        store.create_alert(user_id, stocks["AAPL"], "sideways", 100)


def test_unreachable_database_raises_store_unavailable(tmp_path):
    missing = tmp_path / "no" / "such" / "dir" / "tracker.db"
    store = TrackerStore.from_url(f"sqlite:///{missing}")
    with pytest.raises(StoreUnavailable):
        store.watchlist_rows(1)


@pytest.mark.parametrize("quantity, price", [(-3, 10), (3, 0)])
def test_sqlite_schema_checks_positive_holding_values(store, user_id, stocks, quantity, price):
    pid = store.create_portfolio(user_id, "Tech")
    with pytest.raises(IntegrityError):
        with store.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO portfolio_stocks (portfolio_id, stock_id, quantity, purchase_price) "
                    "VALUES (:pid, :sid, :qty, :price)"
                ),
                {"pid": pid, "sid": stocks["AAPL"], "qty": quantity, "price": price},
            )


def test_deleting_user_cascades_to_lists_and_portfolios(store, user_id, stocks):
    list_id = store.create_watchlist(user_id, "Gone soon")
    store.add_watchlist_item(list_id, stocks["AAPL"])
    pid = store.create_portfolio(user_id, "Gone soon")
    store.add_holding(pid, stocks["AAPL"], 1, 100)

    with store.engine.begin() as conn:
        conn.execute(text("DELETE FROM users WHERE id = :uid"), {"uid": user_id})

    with store.engine.connect() as conn:
        for table in ("lists", "list_items", "portfolios", "portfolio_stocks"):
            assert conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one() == 0


def test_watchlist_item_for_unknown_stock_is_not_a_duplicate(store, user_id):
    list_id = store.create_watchlist(user_id, "Ghosts")
    with pytest.raises(IntegrityError):
        store.add_watchlist_item(list_id, 9999)
