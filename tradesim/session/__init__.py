# Session module
"""Trading session facade consumed by the UI layer."""

from .auth import IAuthProvider, LocalAuthProvider, NotAuthenticated
from .locks import UserLockRegistry
from .session import TradeOutcome, TradingSession
from .worker import QuoteFetchWorker

__all__ = [
    "IAuthProvider",
    "LocalAuthProvider",
    "NotAuthenticated",
    "UserLockRegistry",
    "TradeOutcome",
    "TradingSession",
    "QuoteFetchWorker",
]
