"""Portfolio aggregate helpers and serialization."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .models import (
    HUNDRED,
    INITIAL_CASH,
    ZERO,
    Portfolio,
    Position,
    Trade,
    TradeType,
    UserTradingProfile,
)


# Tolerance used when checking derived fields against their definitions
EPSILON = Decimal("1e-6")


def create_portfolio(user_id: str, initial_cash: Decimal = INITIAL_CASH) -> Portfolio:
    """Create a fresh portfolio seeded with ``initial_cash`` and no positions."""
    portfolio = Portfolio(user_id=user_id, cash=initial_cash)
    return recompute_totals(portfolio)


def create_profile(user_id: str) -> UserTradingProfile:
    return UserTradingProfile(user_id=user_id, created_at=datetime.now())


def recompute_totals(portfolio: Portfolio, now: Optional[datetime] = None) -> Portfolio:
    """Recompute the portfolio-level aggregates from its positions in place.

    Args:
        portfolio: Portfolio to update
        now: Timestamp to record as ``last_updated`` (default: current time)

    Returns:
        The same portfolio instance, for chaining
    """
    invested = sum((p.total_invested for p in portfolio.positions), ZERO)
    positions_value = sum((p.current_value for p in portfolio.positions), ZERO)
    gain_loss = sum((p.unrealized_gain_loss for p in portfolio.positions), ZERO)

    portfolio.total_invested = invested
    portfolio.total_value = portfolio.cash + positions_value
    portfolio.total_gain_loss = gain_loss
    if invested > ZERO:
        portfolio.total_gain_loss_percent = gain_loss / invested * HUNDRED
    else:
        portfolio.total_gain_loss_percent = ZERO
    portfolio.last_updated = now or datetime.now()
    return portfolio


def check_invariants(portfolio: Portfolio) -> List[str]:
    """Return a description of every ledger invariant the portfolio violates.

    An empty list means the snapshot is consistent.
    """
    problems: List[str] = []
    if portfolio.cash < ZERO:
        problems.append(f"negative cash: {portfolio.cash}")

    seen = set()
    for pos in portfolio.positions:
        if pos.symbol in seen:
            problems.append(f"duplicate position: {pos.symbol}")
        seen.add(pos.symbol)
        if pos.quantity <= 0:
            problems.append(f"non-positive quantity for {pos.symbol}: {pos.quantity}")
        if abs(pos.total_invested - pos.quantity * pos.average_price) > EPSILON:
            problems.append(f"cost basis mismatch for {pos.symbol}")

    invested = sum((p.total_invested for p in portfolio.positions), ZERO)
    value = portfolio.cash + sum((p.current_value for p in portfolio.positions), ZERO)
    gain_loss = sum((p.unrealized_gain_loss for p in portfolio.positions), ZERO)
    if abs(portfolio.total_invested - invested) > EPSILON:
        problems.append("total_invested does not match positions")
    if abs(portfolio.total_value - value) > EPSILON:
        problems.append("total_value does not match cash plus positions")
    if abs(portfolio.total_gain_loss - gain_loss) > EPSILON:
        problems.append("total_gain_loss does not match positions")
    return problems


def can_afford_to_buy(portfolio: Portfolio, price: Decimal, quantity: int) -> bool:
    """Check whether the portfolio's cash covers ``quantity`` shares at ``price``."""
    return portfolio.cash >= price * quantity


def can_sell(portfolio: Portfolio, symbol: str, quantity: int) -> bool:
    """Check whether the portfolio holds at least ``quantity`` shares of ``symbol``."""
    position = portfolio.position(symbol)
    return position is not None and position.quantity >= quantity


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class PortfolioSerializer:
    """Serializer for portfolio state to/from JSON-compatible dictionaries.

    Decimals are stored as strings so no value ever passes through float.
    """

    @staticmethod
    def serialize(portfolio: Portfolio) -> dict:
        positions = []
        for pos in portfolio.positions:
            positions.append({
                "symbol": pos.symbol,
                "display_name": pos.display_name,
                "quantity": pos.quantity,
                "average_price": str(pos.average_price),
                "total_invested": str(pos.total_invested),
                "current_price": str(pos.current_price),
                "current_value": str(pos.current_value),
                "unrealized_gain_loss": str(pos.unrealized_gain_loss),
                "unrealized_gain_loss_percent": str(pos.unrealized_gain_loss_percent),
            })

        return {
            "user_id": portfolio.user_id,
            "cash": str(portfolio.cash),
            "positions": positions,
            "total_invested": str(portfolio.total_invested),
            "total_value": str(portfolio.total_value),
            "total_gain_loss": str(portfolio.total_gain_loss),
            "total_gain_loss_percent": str(portfolio.total_gain_loss_percent),
            "last_updated": portfolio.last_updated.isoformat(),
            "version": portfolio.version,
        }

    @staticmethod
    def deserialize(data: dict) -> Portfolio:
        positions = [
            Position(
                symbol=p["symbol"],
                display_name=p.get("display_name", p["symbol"]),
                quantity=int(p["quantity"]),
                average_price=Decimal(p["average_price"]),
                total_invested=Decimal(p["total_invested"]),
                current_price=Decimal(p.get("current_price", "0")),
                current_value=Decimal(p.get("current_value", "0")),
                unrealized_gain_loss=Decimal(p.get("unrealized_gain_loss", "0")),
                unrealized_gain_loss_percent=Decimal(p.get("unrealized_gain_loss_percent", "0")),
            )
            for p in data.get("positions", [])
        ]
        return Portfolio(
            user_id=data["user_id"],
            cash=Decimal(data["cash"]),
            positions=positions,
            total_invested=Decimal(data.get("total_invested", "0")),
            total_value=Decimal(data.get("total_value", data["cash"])),
            total_gain_loss=Decimal(data.get("total_gain_loss", "0")),
            total_gain_loss_percent=Decimal(data.get("total_gain_loss_percent", "0")),
            last_updated=datetime.fromisoformat(data["last_updated"]),
            version=int(data.get("version", 0)),
        )


class TradeSerializer:
    """Serializer for trade records."""

    @staticmethod
    def serialize(trade: Trade) -> dict:
        return {
            "id": trade.id,
            "user_id": trade.user_id,
            "symbol": trade.symbol,
            "display_name": trade.display_name,
            "type": trade.trade_type.value,
            "quantity": trade.quantity,
            "price": str(trade.price),
            "total_amount": str(trade.total_amount),
            "timestamp": trade.timestamp.isoformat(),
            "realized_gain_loss": (
                str(trade.realized_gain_loss) if trade.realized_gain_loss is not None else None
            ),
        }

    @staticmethod
    def deserialize(data: dict) -> Trade:
        realized = data.get("realized_gain_loss")
        return Trade(
            id=data["id"],
            user_id=data["user_id"],
            symbol=data["symbol"],
            display_name=data.get("display_name", data["symbol"]),
            trade_type=TradeType(data["type"]),
            quantity=int(data["quantity"]),
            price=Decimal(data["price"]),
            total_amount=Decimal(data["total_amount"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            realized_gain_loss=Decimal(realized) if realized is not None else None,
        )


class ProfileSerializer:
    """Serializer for user trading profiles."""

    @staticmethod
    def serialize(profile: UserTradingProfile) -> dict:
        return {
            "user_id": profile.user_id,
            "total_trades": profile.total_trades,
            "created_at": profile.created_at.isoformat(),
            "last_trade_at": profile.last_trade_at.isoformat() if profile.last_trade_at else None,
        }

    @staticmethod
    def deserialize(data: dict) -> UserTradingProfile:
        return UserTradingProfile(
            user_id=data["user_id"],
            total_trades=int(data.get("total_trades", 0)),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_trade_at=_dt(data.get("last_trade_at")),
        )
