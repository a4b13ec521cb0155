# Trading module
"""Ledger core: data model, order execution, valuation, trade log and analytics."""

from .models import INITIAL_CASH, Portfolio, Position, Trade, TradeType, UserTradingProfile
from .portfolio import (
    PortfolioSerializer,
    ProfileSerializer,
    TradeSerializer,
    can_afford_to_buy,
    can_sell,
    check_invariants,
    create_portfolio,
    create_profile,
    recompute_totals,
)
from .orders import (
    ExecutionResult,
    OrderExecutionEngine,
    OrderRejectionReason,
    OrderStatus,
    apply_to_profile,
)
from .valuation import PortfolioValuationEngine
from .trade_log import TradeHistory, TradeLog
from .analytics import IPerformanceAnalytics, PerformanceAnalytics, PerformanceMetrics

__all__ = [
    "INITIAL_CASH",
    "Portfolio",
    "Position",
    "Trade",
    "TradeType",
    "UserTradingProfile",
    "PortfolioSerializer",
    "ProfileSerializer",
    "TradeSerializer",
    "can_afford_to_buy",
    "can_sell",
    "check_invariants",
    "create_portfolio",
    "create_profile",
    "recompute_totals",
    "ExecutionResult",
    "OrderExecutionEngine",
    "OrderRejectionReason",
    "OrderStatus",
    "apply_to_profile",
    "PortfolioValuationEngine",
    "TradeHistory",
    "TradeLog",
    "IPerformanceAnalytics",
    "PerformanceAnalytics",
    "PerformanceMetrics",
]
