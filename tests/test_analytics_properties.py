"""Property-based tests for performance analytics."""

from __future__ import annotations

import csv
from decimal import Decimal
from pathlib import Path

from hypothesis import given, settings, strategies as st

from tradesim.trading.analytics import PerformanceAnalytics
from tradesim.trading.models import TradeType
from tradesim.trading.orders import OrderExecutionEngine
from tradesim.trading.portfolio import create_portfolio


engine = OrderExecutionEngine()
analytics = PerformanceAnalytics()

positive_price_strategy = st.decimals(
    min_value=Decimal("1"),
    max_value=Decimal("1000"),
    places=2,
    allow_nan=False,
    allow_infinity=False
)


@st.composite
def executed_trades_strategy(draw):
    """Trades produced by running random intents through the engine."""
    portfolio = create_portfolio("u1", Decimal("10000000"))
    trades = []
    for _ in range(draw(st.integers(min_value=0, max_value=25))):
        side = draw(st.sampled_from([TradeType.BUY, TradeType.SELL]))
        symbol = draw(st.sampled_from(["AAPL", "MSFT", "NVDA"]))
        quantity = draw(st.integers(min_value=1, max_value=100))
        price = draw(positive_price_strategy)
        if side == TradeType.BUY:
            result = engine.execute_buy(portfolio, symbol, symbol, quantity, price)
        else:
            result = engine.execute_sell(portfolio, symbol, symbol, quantity, price)
        if result.executed:
            portfolio = result.portfolio
            trades.append(result.trade)
    return portfolio, trades


@given(state=executed_trades_strategy())
@settings(max_examples=100)
def test_realized_plus_unrealized_explains_total_change(state):
    """
    Starting cash plus realized gains plus cost basis still held equals
    current cash plus invested amount; i.e. money is neither created nor
    lost by the ledger.
    """
    portfolio, trades = state
    metrics = analytics.calculate_metrics(trades)

    bought = sum((t.total_amount for t in trades if t.trade_type == TradeType.BUY), Decimal("0"))
    sold = sum((t.total_amount for t in trades if t.trade_type == TradeType.SELL), Decimal("0"))
    assert portfolio.cash == Decimal("10000000") - bought + sold
    assert abs(
        (bought - portfolio.total_invested) + metrics.realized_pnl - sold
    ) < Decimal("1e-6")


@given(state=executed_trades_strategy())
@settings(max_examples=100)
def test_metrics_counts(state):
    _, trades = state
    metrics = analytics.calculate_metrics(trades)
    sells = [t for t in trades if t.trade_type == TradeType.SELL]

    assert metrics.total_trades == len(trades)
    assert metrics.closed_trades == len(sells)
    assert 0 <= metrics.profitable_trades <= metrics.closed_trades
    assert Decimal("0") <= metrics.win_rate <= Decimal("100")
    assert metrics.total_volume == sum((t.total_amount for t in trades), Decimal("0"))


def test_metrics_for_no_trades():
    metrics = analytics.calculate_metrics([])
    assert metrics.total_trades == 0
    assert metrics.win_rate == Decimal("0")
    assert metrics.realized_pnl == Decimal("0")


def test_export_to_csv(tmp_path: Path):
    portfolio = create_portfolio("u1")
    buy = engine.execute_buy(portfolio, "AAPL", "Apple Inc.", 10, Decimal("100"))
    sell = engine.execute_sell(buy.portfolio, "AAPL", "Apple Inc.", 4, Decimal("110"))
    path = tmp_path / "trades.csv"

    analytics.export_to_csv([sell.trade, buy.trade], str(path))

    with path.open(newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["type"] for r in rows] == ["SELL", "BUY"]
    assert rows[0]["realized_gain_loss"] == "40"
    assert rows[1]["realized_gain_loss"] == ""
    assert rows[1]["total_amount"] == "1000"
