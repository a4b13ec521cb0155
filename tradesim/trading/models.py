"""Data models for the trading ledger."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional


INITIAL_CASH = Decimal("100000")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


class TradeType(Enum):
    """Side of an executed trade."""
    BUY = "BUY"
    SELL = "SELL"


@dataclass
class Position:
    """A user's holding in one symbol.

    Attributes:
        symbol: Ticker symbol (e.g., "AAPL")
        display_name: Human readable instrument name
        quantity: Whole shares held, always > 0 while the position exists
        average_price: Weighted-average cost per share
        total_invested: Cost basis, equals quantity * average_price
        current_price: Last price the position was valued at
        current_value: quantity * current_price
        unrealized_gain_loss: current_value - total_invested
        unrealized_gain_loss_percent: Gain/loss relative to total_invested (0-100 scale)
    """
    symbol: str
    display_name: str
    quantity: int
    average_price: Decimal
    total_invested: Decimal
    current_price: Decimal = ZERO
    current_value: Decimal = ZERO
    unrealized_gain_loss: Decimal = ZERO
    unrealized_gain_loss_percent: Decimal = ZERO

    def mark(self, price: Decimal) -> None:
        """Reprice the derived fields against ``price``."""
        self.current_price = price
        self.current_value = self.quantity * price
        self.unrealized_gain_loss = self.current_value - self.total_invested
        if self.total_invested > ZERO:
            self.unrealized_gain_loss_percent = self.unrealized_gain_loss / self.total_invested * HUNDRED
        else:
            self.unrealized_gain_loss_percent = ZERO


@dataclass(frozen=True)
class Trade:
    """Immutable record of one executed order.

    Attributes:
        user_id: Owner of the trade
        symbol: Ticker symbol
        display_name: Instrument name at execution time
        trade_type: BUY or SELL
        quantity: Whole shares traded
        price: Execution price per share
        total_amount: quantity * price
        timestamp: Time of execution
        realized_gain_loss: Proceeds minus cost basis sold (SELL only)
        id: Unique trade identifier (UUID)
    """
    user_id: str
    symbol: str
    display_name: str
    trade_type: TradeType
    quantity: int
    price: Decimal
    total_amount: Decimal
    timestamp: datetime = field(default_factory=datetime.now)
    realized_gain_loss: Optional[Decimal] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Portfolio:
    """Root aggregate holding a user's cash and positions.

    The ``total_*`` fields are derived and only ever rewritten by
    ``recompute_totals``. ``version`` is owned by the ledger store.
    """
    user_id: str
    cash: Decimal
    positions: List[Position] = field(default_factory=list)
    total_invested: Decimal = ZERO
    total_value: Decimal = ZERO
    total_gain_loss: Decimal = ZERO
    total_gain_loss_percent: Decimal = ZERO
    last_updated: datetime = field(default_factory=datetime.now)
    version: int = 0

    def position(self, symbol: str) -> Optional[Position]:
        for pos in self.positions:
            if pos.symbol == symbol:
                return pos
        return None

    def copy(self) -> "Portfolio":
        """Return an independent snapshot."""
        return copy.deepcopy(self)


@dataclass
class UserTradingProfile:
    """Per-user trading counters."""
    user_id: str
    total_trades: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_trade_at: Optional[datetime] = None
