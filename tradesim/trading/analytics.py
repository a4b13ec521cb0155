"""Performance analytics over the trade log."""

import csv
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List

from .models import ZERO, Trade, TradeType


@dataclass
class PerformanceMetrics:
    """Performance metrics for trading activity.

    Attributes:
        total_trades: Number of executed trades (buys and sells)
        closed_trades: Number of sell trades
        profitable_trades: Number of sells with positive realized gain
        win_rate: Percentage of profitable sells (0-100)
        realized_pnl: Sum of realized gain/loss over all sells
        total_volume: Sum of all trade amounts
    """
    total_trades: int
    closed_trades: int
    profitable_trades: int
    win_rate: Decimal
    realized_pnl: Decimal
    total_volume: Decimal


class IPerformanceAnalytics(ABC):
    """Interface for performance analytics operations."""

    @abstractmethod
    def calculate_metrics(self, trades: Iterable[Trade]) -> PerformanceMetrics:
        ...

    @abstractmethod
    def export_to_csv(self, trades: Iterable[Trade], filepath: str) -> None:
        ...


class PerformanceAnalytics(IPerformanceAnalytics):
    """Analytics based on the realized gain/loss recorded on each sell.

    No cost basis is rebuilt here; the execution engine already records the
    pro-rata basis released by every sell.
    """

    def calculate_metrics(self, trades: Iterable[Trade]) -> PerformanceMetrics:
        """Calculate performance metrics from trades.

        Args:
            trades: Any iterable of trades, in any order

        Returns:
            PerformanceMetrics with calculated values
        """
        trades = list(trades)
        sells = [t for t in trades if t.trade_type == TradeType.SELL]
        realized = [t.realized_gain_loss or ZERO for t in sells]
        profitable = sum(1 for pnl in realized if pnl > ZERO)

        if sells:
            win_rate = Decimal(profitable) / Decimal(len(sells)) * Decimal("100")
        else:
            win_rate = ZERO

        return PerformanceMetrics(
            total_trades=len(trades),
            closed_trades=len(sells),
            profitable_trades=profitable,
            win_rate=win_rate,
            realized_pnl=sum(realized, ZERO),
            total_volume=sum((t.total_amount for t in trades), ZERO),
        )

    def export_to_csv(self, trades: Iterable[Trade], filepath: str) -> None:
        """Export trade history to CSV file.

        Args:
            trades: Trades to export, written in the given order
            filepath: Path to output CSV file
        """
        fieldnames: List[str] = [
            "id", "symbol", "display_name", "type", "quantity", "price",
            "total_amount", "realized_gain_loss", "timestamp",
        ]

        with open(filepath, "w", newline="", encoding="utf-8") as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
            writer.writeheader()

            for trade in trades:
                writer.writerow({
                    "id": trade.id,
                    "symbol": trade.symbol,
                    "display_name": trade.display_name,
                    "type": trade.trade_type.value,
                    "quantity": trade.quantity,
                    "price": str(trade.price),
                    "total_amount": str(trade.total_amount),
                    "realized_gain_loss": (
                        "" if trade.realized_gain_loss is None else str(trade.realized_gain_loss)
                    ),
                    "timestamp": trade.timestamp.isoformat(),
                })
