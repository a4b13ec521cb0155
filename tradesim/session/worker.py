from __future__ import annotations

import logging
from typing import List

from PySide6.QtCore import QObject, Signal, Slot

from tradesim.data.providers import IQuoteSource

logger = logging.getLogger(__name__)


class QuoteFetchWorker(QObject):
    """Fetches quotes off the UI thread.

    Results carry the user id and session generation they were requested
    for, so the receiver can drop answers that arrive after a sign-out.
    """
    quotesReady = Signal(str, int, object)  # user_id, generation, Dict[str, Quote]
    error = Signal(str)

    def __init__(self, source: IQuoteSource) -> None:
        super().__init__()
        self._source = source

    @Slot(str, int, list)
    def fetch(self, user_id: str, generation: int, symbols: List[str]) -> None:
        try:
            quotes = self._source.get_quotes(symbols)
        except Exception as e:
            logger.error(f"Quote fetch failed for {symbols}: {e}")
            self.error.emit(str(e))
            return
        self.quotesReady.emit(user_id, generation, quotes)
