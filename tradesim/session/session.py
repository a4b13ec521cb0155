"""Trading session facade.

Exposes buy/sell, snapshot and valuation refresh to the UI layer, keeps
loading/error state, follows the signed-in user and re-publishes ledger
change notifications. All ledger read-modify-write cycles for a user run
under that user's lock and commit with a version check.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional, TypeVar, Union

from PySide6.QtCore import QObject, QThread, QTimer, Signal, Slot

from tradesim.config import Settings
from tradesim.data.providers import IQuoteSource, Quote, QuoteUnavailable, normalize_symbol
from tradesim.storage.ledger import ILedgerStore, LedgerError, StoreConflict, StoreUnavailable
from tradesim.trading.analytics import PerformanceAnalytics, PerformanceMetrics
from tradesim.trading.models import Portfolio, Trade, TradeType
from tradesim.trading.orders import OrderExecutionEngine, OrderRejectionReason, apply_to_profile
from tradesim.trading.portfolio import check_invariants, create_portfolio, create_profile
from tradesim.trading.trade_log import TradeLog
from tradesim.trading.valuation import PortfolioValuationEngine

from .auth import IAuthProvider, NotAuthenticated
from .locks import UserLockRegistry
from .worker import QuoteFetchWorker

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TRADE_LIMIT = 50
RETRY_MESSAGE = "Could not complete the order, please try again"


@dataclass
class TradeOutcome:
    """Outcome of a buy/sell request, ready for display."""
    success: bool
    message: str
    trade: Optional[Trade] = None
    reason: Optional[OrderRejectionReason] = None


class TradingSession(QObject):
    """Facade between the UI and the ledger engines.

    Signals:
        portfolioChanged: New portfolio snapshot for the signed-in user (or None)
        tradesChanged: Most recent trades after an execution
        errorOccurred: User-facing error message
        loadingChanged: True while an execution is in flight
    """
    portfolioChanged = Signal(object)
    tradesChanged = Signal(list)
    errorOccurred = Signal(str)
    loadingChanged = Signal(bool)
    requestFetch = Signal(str, int, list)

    def __init__(
        self,
        store: ILedgerStore,
        quotes: IQuoteSource,
        auth: IAuthProvider,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__()
        self._store = store
        self._quotes = quotes
        self._auth = auth
        self._settings = settings or Settings()
        self._sleep = sleep
        self._engine = OrderExecutionEngine()
        self._valuation = PortfolioValuationEngine()
        self._analytics = PerformanceAnalytics()
        self._trade_log = TradeLog(store)
        self._locks = UserLockRegistry()

        self._state_lock = threading.Lock()
        self._generation = 0
        self._user_id: Optional[str] = None
        self._snapshot: Optional[Portfolio] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._timer = QTimer(self)
        self._timer.setInterval(self._settings.refresh_interval_ms)
        self._timer.timeout.connect(self._on_refresh_timer)
        self._thread: Optional[QThread] = None
        self._worker: Optional[QuoteFetchWorker] = None

        self._remove_auth_listener = auth.add_listener(self._on_user_changed)
        if auth.current_user_id():
            self._on_user_changed(auth.current_user_id())

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------
    @property
    def generation(self) -> int:
        with self._state_lock:
            return self._generation

    @property
    def portfolio(self) -> Optional[Portfolio]:
        """Cached snapshot for the signed-in user."""
        with self._state_lock:
            return self._snapshot.copy() if self._snapshot else None

    def _is_current(self, user_id: str, generation: int) -> bool:
        with self._state_lock:
            return self._generation == generation and self._user_id == user_id

    def _on_user_changed(self, user_id: Optional[str]) -> None:
        with self._state_lock:
            self._generation += 1
            generation = self._generation
            self._user_id = user_id
            self._snapshot = None
            unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe:
            unsubscribe()

        if not user_id:
            self.portfolioChanged.emit(None)
            return

        self._unsubscribe = self._store.subscribe(
            user_id, lambda p: self._apply_snapshot(user_id, generation, p)
        )
        try:
            self._apply_snapshot(user_id, generation, self.get_portfolio_snapshot(user_id))
        except LedgerError as e:
            logger.error(f"Failed to load portfolio for '{user_id}': {e}")
            self.errorOccurred.emit("Failed to load portfolio")

    def _apply_snapshot(self, user_id: str, generation: int, portfolio: Portfolio) -> bool:
        """Publish ``portfolio`` unless it is stale for this session."""
        with self._state_lock:
            if self._generation != generation or self._user_id != user_id:
                return False
            if self._snapshot is not None and portfolio.version <= self._snapshot.version:
                return False
            self._snapshot = portfolio.copy()
        self.portfolioChanged.emit(portfolio.copy())
        return True

    def _set_loading(self, loading: bool) -> None:
        self.loadingChanged.emit(loading)

    # ------------------------------------------------------------------
    # Ledger access
    # ------------------------------------------------------------------
    def _with_retry(self, action: Callable[[], T], what: str) -> T:
        """Run an idempotent store action, retrying StoreUnavailable with backoff."""
        attempt = 0
        while True:
            try:
                return action()
            except StoreUnavailable as e:
                if attempt >= self._settings.max_write_retries:
                    raise
                delay = self._settings.retry_backoff_s * (2 ** attempt)
                attempt += 1
                logger.warning(f"{what} failed ({e}); retrying in {delay:.2f}s")
                self._sleep(delay)

    def _ensure_ledger(self, user_id: str) -> Portfolio:
        """Read the user's portfolio, creating portfolio and profile on first access."""
        portfolio = self._with_retry(lambda: self._store.read(user_id), "Portfolio read")
        if portfolio is not None:
            return portfolio
        fresh = create_portfolio(user_id, self._settings.initial_cash)
        try:
            created = self._store.commit(user_id, fresh, 0, profile=create_profile(user_id))
            logger.info(f"Created portfolio for '{user_id}' with {fresh.cash} cash")
            return created
        except StoreConflict:
            # Created concurrently by another writer
            return self._with_retry(lambda: self._store.read(user_id), "Portfolio read")

    def get_portfolio_snapshot(self, user_id: str) -> Portfolio:
        """Return the stored portfolio for ``user_id``, creating it if needed."""
        with self._locks.hold(user_id):
            return self._ensure_ledger(user_id)

    def get_trades(self, limit: int = DEFAULT_TRADE_LIMIT) -> List[Trade]:
        """Most recent trades of the signed-in user, newest first."""
        user_id = self._auth.current_user_id()
        if not user_id:
            return []
        return self._with_retry(lambda: self._trade_log.list(user_id).take(limit), "Trade read")

    def get_metrics(self) -> PerformanceMetrics:
        user_id = self._auth.require_user()
        trades = self._with_retry(lambda: list(self._trade_log.list(user_id)), "Trade read")
        return self._analytics.calculate_metrics(trades)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def buy(self, symbol: str, quantity: int) -> TradeOutcome:
        return self._execute(TradeType.BUY, symbol, quantity)

    def sell(self, symbol: str, quantity: int) -> TradeOutcome:
        return self._execute(TradeType.SELL, symbol, quantity)

    def _fail(self, reason: OrderRejectionReason, message: str) -> TradeOutcome:
        self.errorOccurred.emit(message)
        return TradeOutcome(success=False, message=message, reason=reason)

    def _execute(self, side: TradeType, symbol: str, quantity: int) -> TradeOutcome:
        try:
            user_id = self._auth.require_user()
        except NotAuthenticated as e:
            return self._fail(OrderRejectionReason.NOT_AUTHENTICATED, str(e))
        generation = self.generation
        symbol = normalize_symbol(symbol)
        if not symbol:
            return self._fail(OrderRejectionReason.INVALID_SYMBOL, "Symbol must not be empty")

        self._set_loading(True)
        try:
            try:
                quote = self._quotes.get_quote(symbol)
            except QuoteUnavailable as e:
                logger.warning(f"Rejecting {side.value} {symbol}: {e}")
                return self._fail(OrderRejectionReason.QUOTE_UNAVAILABLE, str(e))

            for attempt in range(self._settings.max_write_retries + 1):
                with self._locks.hold(user_id):
                    current = self._ensure_ledger(user_id)
                    if side == TradeType.BUY:
                        result = self._engine.execute_buy(
                            current, symbol, quote.display_name, quantity, quote.price)
                    else:
                        result = self._engine.execute_sell(
                            current, symbol, quote.display_name, quantity, quote.price)
                    if not result.executed:
                        return self._fail(result.rejection_reason, result.message)

                    profile = self._store.read_profile(user_id) or create_profile(user_id)
                    try:
                        stored = self._store.commit(
                            user_id, result.portfolio, current.version,
                            trade=result.trade, profile=apply_to_profile(profile, result.trade),
                        )
                    except StoreConflict:
                        logger.warning(f"{side.value} {symbol} for '{user_id}' conflicted (attempt {attempt + 1})")
                        continue

                problems = check_invariants(stored)
                if problems:
                    logger.warning(f"Ledger invariants violated for '{user_id}': {problems}")
                logger.info(f"{result.message} for '{user_id}'")
                if self._is_current(user_id, generation):
                    self._apply_snapshot(user_id, generation, stored)
                    self.tradesChanged.emit(self.get_trades())
                return TradeOutcome(success=True, message=result.message, trade=result.trade)

            logger.error(f"{side.value} {symbol} for '{user_id}' gave up after repeated conflicts")
            return self._fail(OrderRejectionReason.STORE_CONFLICT, RETRY_MESSAGE)
        except LedgerError as e:
            # Not retried: the commit either landed or it did not
            logger.error(f"{side.value} {symbol} for '{user_id}' failed: {e}")
            return self._fail(OrderRejectionReason.STORE_ERROR, RETRY_MESSAGE)
        finally:
            self._set_loading(False)

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------
    def refresh_valuation(
        self,
        user_id: str,
        quotes: Mapping[str, Union[Quote, Decimal]],
        generation: Optional[int] = None,
    ) -> Optional[Portfolio]:
        """Revalue and persist the portfolio of ``user_id``.

        Returns:
            The stored snapshot, or None when the refresh was discarded
            because the signed-in user changed or conflicts persisted
        """
        generation = self.generation if generation is None else generation
        if not self._is_current(user_id, generation):
            logger.info(f"Discarding valuation for '{user_id}': session changed")
            return None

        for attempt in range(self._settings.max_write_retries + 1):
            with self._locks.hold(user_id):
                try:
                    current = self._ensure_ledger(user_id)
                    revalued = self._valuation.revalue(current, quotes)
                    if not self._is_current(user_id, generation):
                        logger.info(f"Discarding valuation for '{user_id}': session changed")
                        return None
                    if revalued == current:
                        self._apply_snapshot(user_id, generation, current)
                        return current
                    stored = self._with_retry(
                        lambda: self._store.write(user_id, revalued, current.version), "Valuation write")
                except StoreConflict:
                    logger.warning(f"Valuation for '{user_id}' conflicted (attempt {attempt + 1})")
                    continue
                except LedgerError as e:
                    logger.error(f"Valuation for '{user_id}' failed: {e}")
                    return None
            self._apply_snapshot(user_id, generation, stored)
            return stored

        logger.warning(f"Valuation for '{user_id}' skipped after repeated conflicts")
        return None

    def refresh_from_source(self) -> Optional[Portfolio]:
        """Fetch quotes for held symbols and revalue synchronously."""
        user_id = self._auth.current_user_id()
        if not user_id:
            return None
        generation = self.generation
        symbols = self._held_symbols(user_id)
        if not symbols:
            return self.portfolio
        quotes = self._quotes.get_quotes(symbols)
        return self.refresh_valuation(user_id, quotes, generation)

    def _held_symbols(self, user_id: str) -> List[str]:
        snapshot = self.portfolio
        if snapshot is None or snapshot.user_id != user_id:
            snapshot = self.get_portfolio_snapshot(user_id)
        return [p.symbol for p in snapshot.positions]

    def start_auto_refresh(self, interval_ms: Optional[int] = None) -> None:
        """Refresh valuations periodically with quotes fetched on a worker thread."""
        if self._thread is None:
            self._thread = QThread(self)
            self._worker = QuoteFetchWorker(self._quotes)
            self._worker.moveToThread(self._thread)
            self.requestFetch.connect(self._worker.fetch)
            self._worker.quotesReady.connect(self._on_quotes_ready)
            self._worker.error.connect(self._on_fetch_error)
            self._thread.start()
        if interval_ms is not None:
            self._timer.setInterval(interval_ms)
        self._timer.start()

    def stop_auto_refresh(self) -> None:
        self._timer.stop()

    def shutdown(self) -> None:
        self.stop_auto_refresh()
        self._remove_auth_listener()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._thread is not None:
            self._thread.quit()
            self._thread.wait()
            self._thread = None
            self._worker = None

    @Slot()
    def _on_refresh_timer(self) -> None:
        user_id = self._auth.current_user_id()
        if not user_id:
            return
        try:
            symbols = self._held_symbols(user_id)
        except LedgerError as e:
            logger.error(f"Refresh skipped for '{user_id}': {e}")
            return
        if symbols:
            self.requestFetch.emit(user_id, self.generation, symbols)

    @Slot(str, int, object)
    def _on_quotes_ready(self, user_id: str, generation: int, quotes: Dict[str, Quote]) -> None:
        if not self._is_current(user_id, generation):
            logger.info(f"Dropping quotes fetched for '{user_id}': session changed")
            return
        self.refresh_valuation(user_id, quotes, generation)

    @Slot(str)
    def _on_fetch_error(self, message: str) -> None:
        logger.warning(f"Quote refresh failed: {message}")
