from __future__ import annotations

import os
from decimal import Decimal
from typing import Dict

import pytest
from PySide6.QtCore import QCoreApplication

from tradesim.data.providers import IQuoteSource, Quote, QuoteUnavailable


@pytest.fixture(scope="session", autouse=True)
def _qt_app():
    # Use offscreen to avoid GUI requirement in CI
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


class StubQuoteSource(IQuoteSource):
    """Quote source returning configurable prices; unknown symbols fail."""

    def __init__(self, prices: Dict[str, Decimal] | None = None) -> None:
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.calls = 0

    def set_price(self, symbol: str, price: Decimal) -> None:
        self.prices[symbol.upper()] = price

    def get_quote(self, symbol: str) -> Quote:
        self.calls += 1
        sym = symbol.upper()
        if sym not in self.prices:
            raise QuoteUnavailable(sym)
        return Quote(sym, self.prices[sym], display_name=f"{sym} Inc.")


@pytest.fixture
def stub_quotes() -> StubQuoteSource:
    return StubQuoteSource({"AAPL": Decimal("187.32"), "MSFT": Decimal("402.65")})
