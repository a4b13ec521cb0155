"""Paper trading ledger: order execution, valuation and per-user persistence."""

__version__ = "0.1.0"
