from __future__ import annotations

import logging
import signal
import sys
from typing import Optional

from PySide6.QtCore import QCoreApplication, QTimer

from tradesim.config import Settings, configure_logging
from tradesim.data.providers import CachingQuoteSource, IQuoteSource, MockQuoteSource, YahooQuoteSource
from tradesim.session import LocalAuthProvider, TradingSession
from tradesim.storage import JsonFileStorage, LedgerStore, MemoryStorage

logger = logging.getLogger(__name__)


def build_quote_source(settings: Settings) -> CachingQuoteSource:
    if settings.quote_source == "yahoo":
        upstream: IQuoteSource = YahooQuoteSource(timeout_s=settings.http_timeout_s)
    else:
        upstream = MockQuoteSource()
    return CachingQuoteSource(upstream)


def build_session(
    settings: Settings,
    auth: Optional[LocalAuthProvider] = None,
    quotes: Optional[IQuoteSource] = None,
) -> TradingSession:
    """Wire ledger store, quote source and auth provider into a session."""
    if settings.data_dir is not None:
        storage = JsonFileStorage(settings.data_dir)
        logger.info(f"Ledger stored under {settings.data_dir}")
    else:
        storage = MemoryStorage()
    store = LedgerStore(storage)
    return TradingSession(
        store,
        quotes or build_quote_source(settings),
        auth or LocalAuthProvider(),
        settings,
    )


def main(argv: Optional[list] = None) -> int:
    argv = list(sys.argv if argv is None else argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    app = QCoreApplication(argv)
    auth = LocalAuthProvider()
    quotes = build_quote_source(settings)
    session = build_session(settings, auth=auth, quotes=quotes)

    # The mock feed only moves when ticked
    mock_timer = QTimer()
    if isinstance(quotes.upstream, MockQuoteSource):
        mock_timer.setInterval(settings.refresh_interval_ms // 2)
        mock_timer.timeout.connect(quotes.upstream.tick)
        mock_timer.start()

    def log_snapshot(portfolio) -> None:
        if portfolio is None:
            return
        logger.info(
            f"cash={portfolio.cash} value={portfolio.total_value} "
            f"gain_loss={portfolio.total_gain_loss} positions={len(portfolio.positions)}"
        )

    session.portfolioChanged.connect(log_snapshot)
    auth.sign_in(argv[1] if len(argv) > 1 else "local-user")
    session.start_auto_refresh()

    signal.signal(signal.SIGINT, lambda *_: app.quit())
    code = app.exec()
    session.shutdown()
    quotes.close()
    return code


if __name__ == "__main__":
    sys.exit(main())
