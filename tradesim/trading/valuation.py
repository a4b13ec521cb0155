"""Portfolio valuation against live quotes."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Union

from .models import ZERO, Portfolio
from .portfolio import recompute_totals


def _quote_price(quote: object) -> Optional[Decimal]:
    """Extract a usable price from a Decimal or a quote-like object."""
    price = getattr(quote, "price", quote)
    if isinstance(price, bool) or not isinstance(price, (Decimal, int, float)):
        return None
    if not isinstance(price, Decimal):
        price = Decimal(str(price))
    if not price.is_finite() or price <= ZERO:
        return None
    return price


class PortfolioValuationEngine:
    """Refreshes derived fields of a portfolio without touching cash,
    quantities or cost basis.
    """

    def revalue(
        self,
        portfolio: Portfolio,
        quotes: Mapping[str, Union[Decimal, object]],
        now: Optional[datetime] = None,
    ) -> Portfolio:
        """Return a new snapshot valued at ``quotes``.

        Positions without a usable quote keep their last valuation. The
        ``last_updated`` stamp only moves when some position was repriced
        to a different value, so repeated calls with the same quotes yield
        identical snapshots.

        Args:
            portfolio: Snapshot to value
            quotes: Mapping of symbol to price or to an object with ``price``
            now: Timestamp for the refresh (default: current time)

        Returns:
            A new Portfolio instance
        """
        updated = portfolio.copy()
        changed = False
        for position in updated.positions:
            if position.symbol not in quotes:
                continue
            price = _quote_price(quotes[position.symbol])
            if price is None:
                continue
            before = (position.current_price, position.current_value,
                      position.unrealized_gain_loss, position.unrealized_gain_loss_percent)
            position.mark(price)
            after = (position.current_price, position.current_value,
                     position.unrealized_gain_loss, position.unrealized_gain_loss_percent)
            if before != after:
                changed = True

        stamp = (now or datetime.now()) if changed else portfolio.last_updated
        return recompute_totals(updated, stamp)
