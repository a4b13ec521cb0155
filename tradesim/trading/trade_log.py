"""Append-only trade log."""

from __future__ import annotations

from itertools import islice
from typing import TYPE_CHECKING, Iterator, List

from .models import Trade

if TYPE_CHECKING:
    from tradesim.storage.ledger import ILedgerStore


class TradeHistory:
    """Restartable, newest-first view over a user's trades.

    Each iteration re-reads the store, so a history obtained before a new
    trade was appended will include it on the next pass.
    """

    def __init__(self, store: "ILedgerStore", user_id: str) -> None:
        self._store = store
        self._user_id = user_id

    def __iter__(self) -> Iterator[Trade]:
        trades = self._store.list_trades(self._user_id)
        # Later appends come first among identical timestamps
        return iter(sorted(reversed(trades), key=lambda t: t.timestamp, reverse=True))

    def take(self, limit: int) -> List[Trade]:
        """Return at most ``limit`` of the most recent trades."""
        return list(islice(self, max(limit, 0)))


class TradeLog:
    """Append-only trade record keyed by user. No update or delete exists."""

    def __init__(self, store: "ILedgerStore") -> None:
        self._store = store

    def append(self, trade: Trade) -> None:
        self._store.append_trade(trade.user_id, trade)

    def list(self, user_id: str) -> TradeHistory:
        return TradeHistory(self._store, user_id)
