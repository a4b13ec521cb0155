"""Order execution engine.

This module provides order execution functionality including:
- Order status and rejection reason enums
- ExecutionResult dataclass for execution outcomes
- OrderExecutionEngine applying one buy/sell intent to a portfolio snapshot
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from .models import ZERO, Portfolio, Position, Trade, TradeType, UserTradingProfile
from .portfolio import can_afford_to_buy, can_sell, recompute_totals

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """Status of an order after execution."""
    EXECUTED = "executed"
    REJECTED = "rejected"


class OrderRejectionReason(Enum):
    """Reason for order rejection."""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_SHARES = "insufficient_shares"
    NO_POSITION = "no_position"
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_SYMBOL = "invalid_symbol"
    INVALID_PRICE = "invalid_price"
    QUOTE_UNAVAILABLE = "quote_unavailable"
    NOT_AUTHENTICATED = "not_authenticated"
    STORE_CONFLICT = "store_conflict"
    STORE_ERROR = "store_error"


@dataclass
class ExecutionResult:
    """Result of applying one trade intent.

    Attributes:
        status: EXECUTED or REJECTED
        portfolio: The new portfolio snapshot if executed
        trade: The trade record if executed
        rejection_reason: The reason for rejection if rejected
        message: Human-readable message describing the result
    """
    status: OrderStatus
    portfolio: Optional[Portfolio] = None
    trade: Optional[Trade] = None
    rejection_reason: Optional[OrderRejectionReason] = None
    message: str = ""

    @property
    def executed(self) -> bool:
        return self.status == OrderStatus.EXECUTED

    @classmethod
    def rejected(cls, reason: OrderRejectionReason, message: str) -> "ExecutionResult":
        return cls(status=OrderStatus.REJECTED, rejection_reason=reason, message=message)


def _is_valid_symbol(symbol: object) -> bool:
    return isinstance(symbol, str) and symbol.strip() != ""


def _is_valid_quantity(quantity: object) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0


def _to_price(price: object) -> Optional[Decimal]:
    if isinstance(price, bool):
        return None
    if isinstance(price, Decimal):
        value = price
    elif isinstance(price, (int, float)):
        value = Decimal(str(price))
    else:
        return None
    if not value.is_finite() or value <= ZERO:
        return None
    return value


class OrderExecutionEngine:
    """Applies immediate market fills to portfolio snapshots.

    Both operations are pure: the input portfolio is never modified and a
    rejected intent produces no portfolio and no trade. Cost basis uses a
    single weighted average per symbol, reduced pro rata on sells.
    """

    def execute_buy(
        self,
        portfolio: Portfolio,
        symbol: str,
        display_name: str,
        quantity: int,
        price: Decimal,
        now: Optional[datetime] = None,
    ) -> ExecutionResult:
        """Buy ``quantity`` shares of ``symbol`` at ``price``.

        Args:
            portfolio: Current portfolio snapshot
            symbol: Ticker symbol
            display_name: Instrument name recorded on the trade and position
            quantity: Whole shares to buy
            price: Current quote for ``symbol``
            now: Execution time (default: current time)

        Returns:
            ExecutionResult with the new snapshot and trade, or a rejection
        """
        if not _is_valid_symbol(symbol):
            return self._reject(OrderRejectionReason.INVALID_SYMBOL, "Symbol must not be empty")
        if not _is_valid_quantity(quantity):
            return self._reject(OrderRejectionReason.INVALID_QUANTITY,
                                "Quantity must be a positive whole number")
        exec_price = _to_price(price)
        if exec_price is None:
            return self._reject(OrderRejectionReason.INVALID_PRICE,
                                f"Invalid price for {symbol}: {price}")

        total_cost = exec_price * quantity
        if not can_afford_to_buy(portfolio, exec_price, quantity):
            return self._reject(
                OrderRejectionReason.INSUFFICIENT_FUNDS,
                f"Insufficient funds: need {total_cost}, have {portfolio.cash}",
            )

        now = now or datetime.now()
        updated = portfolio.copy()
        updated.cash -= total_cost

        existing = updated.position(symbol)
        if existing is not None:
            # Blend cost basis by weight, not by averaging the two prices
            existing.quantity += quantity
            existing.total_invested += total_cost
            existing.average_price = existing.total_invested / existing.quantity
            if display_name:
                existing.display_name = display_name
            existing.mark(exec_price)
        else:
            position = Position(
                symbol=symbol,
                display_name=display_name or symbol,
                quantity=quantity,
                average_price=exec_price,
                total_invested=total_cost,
            )
            position.mark(exec_price)
            updated.positions.append(position)

        recompute_totals(updated, now)
        trade = Trade(
            user_id=portfolio.user_id,
            symbol=symbol,
            display_name=display_name or symbol,
            trade_type=TradeType.BUY,
            quantity=quantity,
            price=exec_price,
            total_amount=total_cost,
            timestamp=now,
        )
        return ExecutionResult(
            status=OrderStatus.EXECUTED,
            portfolio=updated,
            trade=trade,
            message=f"Bought {quantity} {symbol} at {exec_price}",
        )

    def execute_sell(
        self,
        portfolio: Portfolio,
        symbol: str,
        display_name: str,
        quantity: int,
        price: Decimal,
        now: Optional[datetime] = None,
    ) -> ExecutionResult:
        """Sell ``quantity`` shares of ``symbol`` at ``price``.

        Selling the entire holding removes the position. A partial sell
        reduces cost basis pro rata, leaving the average price unchanged.
        """
        if not _is_valid_symbol(symbol):
            return self._reject(OrderRejectionReason.INVALID_SYMBOL, "Symbol must not be empty")
        if not _is_valid_quantity(quantity):
            return self._reject(OrderRejectionReason.INVALID_QUANTITY,
                                "Quantity must be a positive whole number")
        exec_price = _to_price(price)
        if exec_price is None:
            return self._reject(OrderRejectionReason.INVALID_PRICE,
                                f"Invalid price for {symbol}: {price}")

        held = portfolio.position(symbol)
        if held is None:
            return self._reject(OrderRejectionReason.NO_POSITION,
                                f"No position found for {symbol}")
        if not can_sell(portfolio, symbol, quantity):
            return self._reject(
                OrderRejectionReason.INSUFFICIENT_SHARES,
                f"Insufficient shares: need {quantity}, have {held.quantity}",
            )

        now = now or datetime.now()
        updated = portfolio.copy()
        position = updated.position(symbol)
        total_proceeds = exec_price * quantity
        updated.cash += total_proceeds

        if quantity == position.quantity:
            investment_sold = position.total_invested
            updated.positions.remove(position)
        else:
            # Multiply before dividing so evenly divisible lots stay exact
            investment_sold = position.total_invested * quantity / position.quantity
            position.quantity -= quantity
            position.total_invested -= investment_sold
            position.mark(exec_price)

        recompute_totals(updated, now)
        trade = Trade(
            user_id=portfolio.user_id,
            symbol=symbol,
            display_name=display_name or held.display_name,
            trade_type=TradeType.SELL,
            quantity=quantity,
            price=exec_price,
            total_amount=total_proceeds,
            timestamp=now,
            realized_gain_loss=total_proceeds - investment_sold,
        )
        return ExecutionResult(
            status=OrderStatus.EXECUTED,
            portfolio=updated,
            trade=trade,
            message=f"Sold {quantity} {symbol} at {exec_price}",
        )

    @staticmethod
    def _reject(reason: OrderRejectionReason, message: str) -> ExecutionResult:
        logger.info(f"Order rejected ({reason.value}): {message}")
        return ExecutionResult.rejected(reason, message)


def apply_to_profile(profile: UserTradingProfile, trade: Trade) -> UserTradingProfile:
    """Return a copy of ``profile`` with the trade counters advanced."""
    return UserTradingProfile(
        user_id=profile.user_id,
        total_trades=profile.total_trades + 1,
        created_at=profile.created_at,
        last_trade_at=trade.timestamp,
    )
