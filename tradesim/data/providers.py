from __future__ import annotations

import logging
import random
import ssl
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

import certifi
import httpx
import truststore

logger = logging.getLogger(__name__)


YAHOO_BASE = "https://query1.finance.yahoo.com"

# symbol -> (display name, base price)
MOCK_CATALOGUE: Dict[str, tuple] = {
    "AAPL": ("Apple Inc.", "187.32"),
    "MSFT": ("Microsoft Corp.", "402.65"),
    "GOOGL": ("Alphabet Inc.", "157.95"),
    "TSLA": ("Tesla Inc.", "248.50"),
    "AMZN": ("Amazon.com Inc.", "145.86"),
    "META": ("Meta Platforms Inc.", "312.18"),
    "NVDA": ("NVIDIA Corporation", "875.25"),
    "NFLX": ("Netflix Inc.", "425.60"),
    "ORCL": ("Oracle Corporation", "118.45"),
    "CRM": ("Salesforce Inc.", "234.56"),
    "ADBE": ("Adobe Inc.", "512.34"),
    "AMD": ("Advanced Micro Devices", "142.30"),
    "INTC": ("Intel Corporation", "45.75"),
}
DEFAULT_MOCK_PRICE = Decimal("100")
CENT = Decimal("0.01")


class QuoteUnavailable(Exception):
    """No usable price could be obtained for a symbol."""

    def __init__(self, symbol: str, reason: str = "") -> None:
        super().__init__(f"No price data available for {symbol}" + (f": {reason}" if reason else ""))
        self.symbol = symbol


@dataclass(frozen=True)
class Quote:
    symbol: str
    price: Decimal
    as_of: datetime = field(default_factory=datetime.now)
    display_name: str = ""


class IQuoteSource(ABC):
    """Interface for market data providers."""

    @abstractmethod
    def get_quote(self, symbol: str) -> Quote:
        """Get the current quote for a symbol.

        Raises:
            QuoteUnavailable: If no positive price is available
        """
        ...

    def get_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        """Get quotes for several symbols; symbols that fail are omitted."""
        out: Dict[str, Quote] = {}
        for sym in symbols:
            try:
                out[sym] = self.get_quote(sym)
            except QuoteUnavailable as e:
                logger.warning(str(e))
        return out

    def close(self) -> None:
        """Release network resources; sources without any keep the default."""


def normalize_symbol(s: str) -> str:
    return s.strip().upper()


class MockQuoteSource(IQuoteSource):
    """Deterministic mock feed.

    Starts from a fixed price catalogue and drifts each symbol by a bounded
    seeded random walk on every ``tick()``. The same seed and the same tick
    sequence always produce the same prices.
    """

    def __init__(self, seed: int = 42, max_move_pct: Decimal = Decimal("2")) -> None:
        self._rng = random.Random(seed)
        self._max_move = max_move_pct / Decimal("100")
        self._prices: Dict[str, Decimal] = {
            sym: Decimal(price) for sym, (_, price) in MOCK_CATALOGUE.items()
        }
        self._names: Dict[str, str] = {sym: name for sym, (name, _) in MOCK_CATALOGUE.items()}
        self._lock = threading.Lock()

    def symbols(self) -> List[str]:
        return sorted(self._prices)

    def set_price(self, symbol: str, price: Decimal, display_name: Optional[str] = None) -> None:
        sym = normalize_symbol(symbol)
        with self._lock:
            self._prices[sym] = price
            if display_name:
                self._names[sym] = display_name

    def tick(self) -> None:
        """Advance every known symbol one random-walk step."""
        with self._lock:
            for sym in sorted(self._prices):
                move = Decimal(str(self._rng.uniform(-1.0, 1.0))) * self._max_move
                moved = (self._prices[sym] * (Decimal("1") + move)).quantize(CENT)
                self._prices[sym] = max(moved, CENT)

    def get_quote(self, symbol: str) -> Quote:
        sym = normalize_symbol(symbol)
        if not sym:
            raise QuoteUnavailable(repr(symbol), "empty symbol")
        # Unknown symbols quote at the default without joining the walk
        with self._lock:
            price = self._prices.get(sym, DEFAULT_MOCK_PRICE)
            name = self._names.get(sym, sym)
        if price <= 0:
            raise QuoteUnavailable(sym, "non-positive price")
        return Quote(sym, price, datetime.now(), name)


def _market_time(ts: object) -> datetime:
    if not ts:
        return datetime.now()
    try:
        return datetime.fromtimestamp(int(ts))
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning(f"Ignoring malformed quote timestamp {ts!r}")
        return datetime.now()


def _make_ssl_context() -> ssl.SSLContext:
    """Prefer the OS trust store, fall back to the certifi bundle."""
    try:
        return truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    except (ssl.SSLError, OSError) as e:
        logger.warning(f"System trust store unavailable ({e}); using certifi bundle")
        return ssl.create_default_context(cafile=certifi.where())


class YahooQuoteSource(IQuoteSource):
    """Live quotes from the Yahoo Finance chart endpoint."""

    def __init__(self, timeout_s: float = 5.0) -> None:
        self._client = httpx.Client(
            base_url=YAHOO_BASE,
            timeout=timeout_s,
            verify=_make_ssl_context(),
            headers={"User-Agent": "Mozilla/5.0"},
        )
        self._lock = threading.Lock()

    def get_quote(self, symbol: str) -> Quote:
        sym = normalize_symbol(symbol)
        if not sym:
            raise QuoteUnavailable(repr(symbol), "empty symbol")
        try:
            with self._lock:
                r = self._client.get(f"/v8/finance/chart/{sym}", params={"interval": "1d", "range": "1d"})
            r.raise_for_status()
            meta = r.json()["chart"]["result"][0]["meta"]
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            raise QuoteUnavailable(sym, str(e)) from e

        raw = meta.get("regularMarketPrice") or meta.get("previousClose")
        try:
            price = Decimal(str(raw))
        except (InvalidOperation, TypeError) as e:
            raise QuoteUnavailable(sym, f"bad price {raw!r}") from e
        if not price.is_finite() or price <= 0:
            raise QuoteUnavailable(sym, f"bad price {raw!r}")

        as_of = _market_time(meta.get("regularMarketTime"))
        name = meta.get("longName") or meta.get("shortName") or sym
        return Quote(sym, price, as_of, name)

    def close(self) -> None:
        self._client.close()


class CachingQuoteSource(IQuoteSource):
    """Wraps a source and remembers the last known quote per symbol.

    ``get_quote`` always goes upstream, so order execution never sees a
    stale price. ``get_quotes`` fills upstream failures from the cache,
    which is what valuation refreshes use.
    """

    def __init__(self, upstream: IQuoteSource) -> None:
        self._upstream = upstream
        self._last: Dict[str, Quote] = {}
        self._lock = threading.Lock()

    @property
    def upstream(self) -> IQuoteSource:
        return self._upstream

    def close(self) -> None:
        self._upstream.close()

    def last_known(self, symbol: str) -> Optional[Quote]:
        with self._lock:
            return self._last.get(normalize_symbol(symbol))

    def _remember(self, quotes: Iterable[Quote]) -> None:
        with self._lock:
            for q in quotes:
                self._last[normalize_symbol(q.symbol)] = q

    def get_quote(self, symbol: str) -> Quote:
        quote = self._upstream.get_quote(symbol)
        self._remember([quote])
        return quote

    def get_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        symbols = list(symbols)
        try:
            fresh = self._upstream.get_quotes(symbols)
        except (QuoteUnavailable, httpx.HTTPError) as e:
            logger.warning(f"Quote refresh failed, using last known prices: {e}")
            fresh = {}
        self._remember(fresh.values())

        out: Dict[str, Quote] = dict(fresh)
        for sym in symbols:
            if sym not in out:
                cached = self.last_known(sym)
                if cached is not None:
                    out[sym] = cached
        return out
