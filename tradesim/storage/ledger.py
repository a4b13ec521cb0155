"""Ledger store: per-user portfolio, profile and trade log persistence.

One document per user holds the portfolio, the trading profile and the
append-only trade list. Portfolio writes are compare-and-swap on the
portfolio ``version``; a mismatch raises ``StoreConflict`` and writes
nothing.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from typing import Callable, Dict, Iterator, List, Optional

from tradesim.trading.models import Portfolio, Trade, UserTradingProfile
from tradesim.trading.portfolio import (
    PortfolioSerializer,
    ProfileSerializer,
    TradeSerializer,
)

from .storage import IStorageService, MemoryStorage

logger = logging.getLogger(__name__)

PortfolioListener = Callable[[Portfolio], None]


class LedgerError(Exception):
    """Base class for ledger store failures."""


class StoreConflict(LedgerError):
    """The stored portfolio version differs from the expected version."""

    def __init__(self, user_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Portfolio for '{user_id}' changed concurrently (expected v{expected}, found v{actual})"
        )
        self.user_id = user_id
        self.expected = expected
        self.actual = actual


class StoreUnavailable(LedgerError):
    """The underlying storage could not be read or written."""


class ILedgerStore(ABC):
    """Interface for ledger persistence keyed by user id."""

    @abstractmethod
    def read(self, user_id: str) -> Optional[Portfolio]:
        """Return the stored portfolio, or None if the user has none."""
        ...

    @abstractmethod
    def write(self, user_id: str, portfolio: Portfolio, expected_version: int) -> Portfolio:
        """Store ``portfolio`` if the stored version equals ``expected_version``.

        A user without a portfolio has version 0.

        Returns:
            The stored portfolio carrying its new version

        Raises:
            StoreConflict: If the stored version differs
        """
        ...

    @abstractmethod
    def commit(
        self,
        user_id: str,
        portfolio: Portfolio,
        expected_version: int,
        trade: Optional[Trade] = None,
        profile: Optional[UserTradingProfile] = None,
    ) -> Portfolio:
        """Write portfolio, append trade and replace profile as one unit.

        Raises:
            StoreConflict: If the stored version differs; nothing is written
        """
        ...

    @abstractmethod
    def append_trade(self, user_id: str, trade: Trade) -> None:
        ...

    @abstractmethod
    def list_trades(self, user_id: str) -> List[Trade]:
        """Return the user's trades in append order."""
        ...

    @abstractmethod
    def read_profile(self, user_id: str) -> Optional[UserTradingProfile]:
        ...

    @abstractmethod
    def write_profile(self, user_id: str, profile: UserTradingProfile) -> None:
        ...

    @abstractmethod
    def subscribe(self, user_id: str, callback: PortfolioListener) -> Callable[[], None]:
        """Register ``callback`` for portfolio writes of ``user_id``.

        Returns:
            A callable that removes the subscription
        """
        ...


class LedgerStore(ILedgerStore):
    """Ledger store over any ``IStorageService``.

    ``MemoryStorage`` gives the mock/local adapter and ``JsonFileStorage``
    the persistent one; the ledger logic is shared. Every write runs its
    version check and save inside the substrate's exclusive section for the
    user, so stores sharing a substrate still see each other's versions.
    """

    KEY_PREFIX = "ledger_"

    def __init__(self, storage: Optional[IStorageService] = None) -> None:
        """Initialize the store.

        Args:
            storage: Document substrate (default: a fresh MemoryStorage)
        """
        self._storage = storage if storage is not None else MemoryStorage()
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[PortfolioListener]] = defaultdict(list)

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    @contextmanager
    def _exclusive(self, user_id: str) -> Iterator[None]:
        with self._lock, ExitStack() as stack:
            try:
                stack.enter_context(self._storage.locked(self._key(user_id)))
            except OSError as e:
                raise StoreUnavailable(f"Failed to lock ledger for '{user_id}': {e}") from e
            yield

    def _load_doc(self, user_id: str) -> dict:
        try:
            doc = self._storage.load(self._key(user_id))
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"Failed to read ledger for '{user_id}': {e}") from e
        return doc or {"portfolio": None, "profile": None, "trades": []}

    def _save_doc(self, user_id: str, doc: dict) -> None:
        try:
            self._storage.save(self._key(user_id), doc)
        except (OSError, TypeError) as e:
            raise StoreUnavailable(f"Failed to write ledger for '{user_id}': {e}") from e

    def read(self, user_id: str) -> Optional[Portfolio]:
        """Read the stored portfolio of ``user_id``.

        Args:
            user_id: Owner of the ledger

        Returns:
            The portfolio carrying its stored version, or None

        Raises:
            StoreUnavailable: If the substrate cannot be read
        """
        with self._lock:
            data = self._load_doc(user_id).get("portfolio")
        return PortfolioSerializer.deserialize(data) if data else None

    def write(self, user_id: str, portfolio: Portfolio, expected_version: int) -> Portfolio:
        return self.commit(user_id, portfolio, expected_version)

    def commit(
        self,
        user_id: str,
        portfolio: Portfolio,
        expected_version: int,
        trade: Optional[Trade] = None,
        profile: Optional[UserTradingProfile] = None,
    ) -> Portfolio:
        """Write portfolio, trade and profile in one document save.

        Args:
            user_id: Owner of the ledger
            portfolio: New portfolio snapshot; its own ``version`` is ignored
            expected_version: Version the snapshot was derived from (0 if none)
            trade: Trade to append, if any
            profile: Profile to replace, if any

        Returns:
            A copy of the stored portfolio with its new version

        Raises:
            StoreConflict: If the stored version differs; nothing is written
            StoreUnavailable: If the substrate cannot be locked, read or written
        """
        with self._exclusive(user_id):
            doc = self._load_doc(user_id)
            current = doc.get("portfolio")
            current_version = int(current.get("version", 0)) if current else 0
            if current_version != expected_version:
                logger.warning(
                    f"Version conflict for '{user_id}': expected v{expected_version}, found v{current_version}"
                )
                raise StoreConflict(user_id, expected_version, current_version)

            stored = portfolio.copy()
            stored.version = current_version + 1
            doc["portfolio"] = PortfolioSerializer.serialize(stored)
            if trade is not None:
                doc.setdefault("trades", []).append(TradeSerializer.serialize(trade))
            if profile is not None:
                doc["profile"] = ProfileSerializer.serialize(profile)
            self._save_doc(user_id, doc)

        self._notify(user_id, stored)
        return stored.copy()

    def append_trade(self, user_id: str, trade: Trade) -> None:
        """Append ``trade`` to the user's log without touching the portfolio.

        Args:
            user_id: Owner of the ledger
            trade: Executed trade to record
        """
        with self._exclusive(user_id):
            doc = self._load_doc(user_id)
            doc.setdefault("trades", []).append(TradeSerializer.serialize(trade))
            self._save_doc(user_id, doc)

    def list_trades(self, user_id: str) -> List[Trade]:
        with self._lock:
            rows = list(self._load_doc(user_id).get("trades") or [])
        return [TradeSerializer.deserialize(row) for row in rows]

    def read_profile(self, user_id: str) -> Optional[UserTradingProfile]:
        with self._lock:
            data = self._load_doc(user_id).get("profile")
        return ProfileSerializer.deserialize(data) if data else None

    def write_profile(self, user_id: str, profile: UserTradingProfile) -> None:
        """Replace the user's trading profile.

        Args:
            user_id: Owner of the ledger
            profile: New profile counters
        """
        with self._exclusive(user_id):
            doc = self._load_doc(user_id)
            doc["profile"] = ProfileSerializer.serialize(profile)
            self._save_doc(user_id, doc)

    def subscribe(self, user_id: str, callback: PortfolioListener) -> Callable[[], None]:
        with self._lock:
            self._listeners[user_id].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners.get(user_id, []):
                    self._listeners[user_id].remove(callback)

        return unsubscribe

    def _notify(self, user_id: str, portfolio: Portfolio) -> None:
        with self._lock:
            listeners = list(self._listeners.get(user_id, []))
        for listener in listeners:
            try:
                listener(portfolio.copy())
            except Exception as e:
                logger.error(f"Ledger listener for '{user_id}' failed: {e}")
