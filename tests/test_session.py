from __future__ import annotations

import threading
import time
from decimal import Decimal

import pytest
from PySide6.QtCore import QCoreApplication

from tradesim.config import Settings
from tradesim.data.providers import MockQuoteSource
from tradesim.session import (
    LocalAuthProvider,
    NotAuthenticated,
    QuoteFetchWorker,
    TradingSession,
    UserLockRegistry,
)
from tradesim.storage import LedgerStore, StoreUnavailable
from tradesim.trading.orders import OrderRejectionReason
from tradesim.trading.valuation import PortfolioValuationEngine

from conftest import StubQuoteSource


class ConflictingStore(LedgerStore):
    """Simulates another writer landing just before each trade commit."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.remaining = conflicts
        self.trade_commits = 0

    def commit(self, user_id, portfolio, expected_version, trade=None, profile=None):
        if trade is not None:
            self.trade_commits += 1
            if self.remaining > 0:
                self.remaining -= 1
                current = self.read(user_id)
                super().commit(user_id, current, current.version)
        return super().commit(user_id, portfolio, expected_version, trade, profile)


class BrokenCommitStore(LedgerStore):
    def __init__(self) -> None:
        super().__init__()
        self.trade_commits = 0

    def commit(self, user_id, portfolio, expected_version, trade=None, profile=None):
        if trade is not None:
            self.trade_commits += 1
            raise StoreUnavailable("disk full")
        return super().commit(user_id, portfolio, expected_version, trade, profile)


class FlakyReadStore(LedgerStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def read(self, user_id):
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("connection reset")
        return super().read(user_id)


def _settings(**overrides) -> Settings:
    values = dict(max_write_retries=2, retry_backoff_s=0.2)
    values.update(overrides)
    return Settings(**values)


def _session(store, quotes, auth, **overrides) -> TradingSession:
    return TradingSession(store, quotes, auth, _settings(**overrides), sleep=lambda _: None)


@pytest.fixture
def auth() -> LocalAuthProvider:
    return LocalAuthProvider()


@pytest.fixture
def store() -> LedgerStore:
    return LedgerStore()


@pytest.fixture
def session(store, stub_quotes, auth):
    s = _session(store, stub_quotes, auth)
    yield s
    s.shutdown()


def test_sign_in_creates_portfolio_and_profile(session, store, auth):
    snapshots = []
    session.portfolioChanged.connect(snapshots.append)

    auth.sign_in("u1")

    assert snapshots[-1].cash == Decimal("100000")
    assert snapshots[-1].positions == []
    assert store.read_profile("u1").total_trades == 0
    assert session.portfolio.version == 1


def test_buy_executes_at_quote_and_updates_profile(session, store, auth):
    trades_seen = []
    session.tradesChanged.connect(trades_seen.append)
    auth.sign_in("u1")

    outcome = session.buy("aapl", 10)

    assert outcome.success
    assert outcome.trade.price == Decimal("187.32")
    assert outcome.trade.display_name == "AAPL Inc."
    assert session.portfolio.cash == Decimal("98126.80")
    assert store.read("u1").position("AAPL").quantity == 10
    profile = store.read_profile("u1")
    assert profile.total_trades == 1
    assert profile.last_trade_at == outcome.trade.timestamp
    assert [t.id for t in trades_seen[-1]] == [outcome.trade.id]


def test_sell_full_position_removes_it(session, store, auth):
    auth.sign_in("u1")
    session.buy("MSFT", 3)

    outcome = session.sell("MSFT", 3)

    assert outcome.success
    assert store.read("u1").positions == []
    assert store.read("u1").cash == Decimal("100000")
    assert store.read_profile("u1").total_trades == 2


def test_rejections_are_outcomes_and_leave_ledger_unchanged(session, store, auth):
    errors = []
    session.errorOccurred.connect(errors.append)
    auth.sign_in("u1")
    before = store.read("u1")

    too_big = session.buy("MSFT", 1000)
    no_position = session.sell("AAPL", 1)

    assert not too_big.success
    assert too_big.reason == OrderRejectionReason.INSUFFICIENT_FUNDS
    assert no_position.reason == OrderRejectionReason.NO_POSITION
    assert store.read("u1") == before
    assert store.list_trades("u1") == []
    assert len(errors) == 2


def test_insufficient_shares(session, auth):
    auth.sign_in("u1")
    session.buy("AAPL", 2)
    outcome = session.sell("AAPL", 3)
    assert outcome.reason == OrderRejectionReason.INSUFFICIENT_SHARES


def test_not_authenticated_is_rejected_before_store_access(session, stub_quotes):
    outcome = session.buy("AAPL", 1)
    assert outcome.reason == OrderRejectionReason.NOT_AUTHENTICATED
    assert stub_quotes.calls == 0
    assert session.get_trades() == []
    with pytest.raises(NotAuthenticated):
        session.get_metrics()


def test_missing_quote_rejects_execution(session, store, auth):
    auth.sign_in("u1")
    outcome = session.buy("NOPE", 1)
    assert outcome.reason == OrderRejectionReason.QUOTE_UNAVAILABLE
    assert store.list_trades("u1") == []


def test_conflict_retries_full_cycle(stub_quotes, auth):
    store = ConflictingStore(conflicts=1)
    session = _session(store, stub_quotes, auth)
    auth.sign_in("u1")

    outcome = session.buy("AAPL", 10)

    assert outcome.success
    assert store.trade_commits == 2
    assert len(store.list_trades("u1")) == 1
    assert store.read("u1").cash == Decimal("98126.80")
    session.shutdown()


def test_persistent_conflict_fails_without_writing(stub_quotes, auth):
    store = ConflictingStore(conflicts=100)
    session = _session(store, stub_quotes, auth)
    auth.sign_in("u1")

    outcome = session.buy("AAPL", 10)

    assert not outcome.success
    assert outcome.reason == OrderRejectionReason.STORE_CONFLICT
    assert store.trade_commits == 3
    assert store.list_trades("u1") == []
    assert store.read("u1").cash == Decimal("100000")
    session.shutdown()


def test_failed_commit_is_not_retried(stub_quotes, auth):
    store = BrokenCommitStore()
    session = _session(store, stub_quotes, auth)
    auth.sign_in("u1")

    outcome = session.buy("AAPL", 1)

    assert outcome.reason == OrderRejectionReason.STORE_ERROR
    assert store.trade_commits == 1
    session.shutdown()


def test_reads_retry_with_backoff(stub_quotes, auth):
    store = FlakyReadStore(failures=2)
    delays = []
    session = TradingSession(store, stub_quotes, auth, _settings(), sleep=delays.append)

    portfolio = session.get_portfolio_snapshot("u1")

    assert portfolio.cash == Decimal("100000")
    assert delays == [0.2, 0.4]
    session.shutdown()


def test_concurrent_buys_cannot_double_spend(stub_quotes, auth):
    store = LedgerStore()
    stub_quotes.set_price("AAPL", Decimal("100"))
    session = _session(store, stub_quotes, auth, initial_cash=Decimal("1000"))
    auth.sign_in("u1")
    barrier = threading.Barrier(4)
    outcomes = []

    def worker():
        barrier.wait()
        outcomes.append(session.buy("AAPL", 6))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for o in outcomes if o.success) == 1
    assert store.read("u1").cash == Decimal("400")
    assert len(store.list_trades("u1")) == 1
    session.shutdown()


def test_refresh_from_source_revalues_and_persists(session, store, auth, stub_quotes):
    auth.sign_in("u1")
    session.buy("AAPL", 10)
    version = store.read("u1").version
    stub_quotes.set_price("AAPL", Decimal("200"))

    refreshed = session.refresh_from_source()

    assert refreshed.position("AAPL").current_price == Decimal("200")
    assert refreshed.position("AAPL").unrealized_gain_loss == Decimal("126.80")
    assert store.read("u1").version == version + 1
    assert session.portfolio.total_value == Decimal("98126.80") + Decimal("2000")


def test_refresh_with_unchanged_quotes_does_not_write(session, store, auth):
    auth.sign_in("u1")
    session.buy("AAPL", 1)
    version = store.read("u1").version

    session.refresh_valuation("u1", {"AAPL": Decimal("187.32")})

    assert store.read("u1").version == version


def test_stale_valuation_is_discarded_after_session_change(session, store, auth):
    auth.sign_in("u1")
    session.buy("AAPL", 10)
    generation = session.generation

    auth.sign_out()
    assert session.refresh_valuation("u1", {"AAPL": Decimal("300")}) is None

    auth.sign_in("u1")
    assert session.refresh_valuation("u1", {"AAPL": Decimal("300")}, generation=generation) is None
    session._on_quotes_ready("u1", generation, {"AAPL": Decimal("300")})

    assert store.read("u1").position("AAPL").current_price == Decimal("187.32")


def test_sign_out_publishes_none(session, auth):
    snapshots = []
    auth.sign_in("u1")
    session.portfolioChanged.connect(snapshots.append)

    auth.sign_out()

    assert snapshots == [None]
    assert session.portfolio is None


def test_external_writes_are_published_and_old_versions_ignored(session, store, auth):
    auth.sign_in("u1")
    session.buy("AAPL", 1)
    old = store.read("u1")

    revalued = PortfolioValuationEngine().revalue(old, {"AAPL": Decimal("190")})
    store.write("u1", revalued, old.version)

    assert session.portfolio.position("AAPL").current_price == Decimal("190")
    assert session._apply_snapshot("u1", session.generation, old) is False
    assert session.portfolio.version == old.version + 1


def test_other_users_writes_are_not_published(session, store, auth):
    auth.sign_in("u1")
    snapshots = []
    session.portfolioChanged.connect(snapshots.append)

    session.get_portfolio_snapshot("u2")
    store.write("u2", store.read("u2"), 1)

    assert snapshots == []


def test_get_trades_and_metrics(session, auth):
    auth.sign_in("u1")
    session.buy("AAPL", 10)
    session.sell("AAPL", 4)

    trades = session.get_trades(limit=1)
    metrics = session.get_metrics()

    assert len(trades) == 1
    assert metrics.total_trades == 2
    assert metrics.closed_trades == 1
    assert metrics.realized_pnl == Decimal("0")


def test_quote_worker_emits_results_with_session_tag():
    source = StubQuoteSource({"AAPL": Decimal("10")})
    worker = QuoteFetchWorker(source)
    received = []
    worker.quotesReady.connect(lambda user_id, generation, quotes: received.append((user_id, generation, quotes)))

    worker.fetch("u1", 3, ["AAPL", "NOPE"])

    assert len(received) == 1
    user_id, generation, quotes = received[0]
    assert (user_id, generation) == ("u1", 3)
    assert list(quotes) == ["AAPL"]


class GatedQuoteSource(StubQuoteSource):
    """Batch fetches block until released, to hold a refresh in flight."""

    def __init__(self, prices) -> None:
        super().__init__(prices)
        self.started = threading.Event()
        self.release = threading.Event()

    def get_quotes(self, symbols):
        self.started.set()
        self.release.wait(5)
        return super().get_quotes(symbols)


def _spin(predicate=lambda: False, timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        QCoreApplication.processEvents()
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_blank_symbol_never_fills_at_a_made_up_price(auth):
    quotes = MockQuoteSource()
    store = LedgerStore()
    session = _session(store, quotes, auth)
    auth.sign_in("u1")

    outcome = session.buy("   ", 1)

    assert outcome.reason == OrderRejectionReason.INVALID_SYMBOL
    assert store.list_trades("u1") == []
    assert store.read("u1").positions == []
    assert "" not in quotes.symbols()
    session.shutdown()


def test_auto_refresh_revalues_on_timer(session, store, auth, stub_quotes):
    snapshots = []
    session.portfolioChanged.connect(snapshots.append)
    auth.sign_in("u1")
    session.buy("AAPL", 10)
    stub_quotes.set_price("AAPL", Decimal("200"))

    session.start_auto_refresh(interval_ms=10)

    def repriced():
        return any(
            p is not None and p.position("AAPL").current_price == Decimal("200") for p in snapshots
        )

    assert _spin(repriced)
    session.stop_auto_refresh()
    assert store.read("u1").position("AAPL").current_price == Decimal("200")


def test_auto_refresh_result_is_dropped_after_sign_out(store, auth):
    quotes = GatedQuoteSource({"AAPL": Decimal("187.32")})
    session = _session(store, quotes, auth)
    auth.sign_in("u1")
    session.buy("AAPL", 10)
    version = store.read("u1").version

    session.start_auto_refresh(interval_ms=10)
    try:
        assert _spin(quotes.started.is_set)
        session.stop_auto_refresh()
        auth.sign_out()
        auth.sign_in("u1")
        quotes.set_price("AAPL", Decimal("300"))
        quotes.release.set()
        _spin(timeout_s=0.5)
    finally:
        quotes.release.set()
        session.shutdown()

    stored = store.read("u1")
    assert stored.position("AAPL").current_price == Decimal("187.32")
    assert stored.version == version


def test_user_locks_are_released_when_unused():
    registry = UserLockRegistry()
    with registry.hold("u1"):
        with registry.hold("u1"):
            assert len(registry) == 1
        with registry.hold("u2"):
            assert len(registry) == 2
    assert len(registry) == 0
