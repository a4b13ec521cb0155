# Storage module
"""Persistence services for the trading ledger."""

from tradesim.storage.storage import IStorageService, JsonFileStorage, MemoryStorage
from tradesim.storage.ledger import (
    ILedgerStore,
    LedgerError,
    LedgerStore,
    StoreConflict,
    StoreUnavailable,
)

__all__ = [
    "IStorageService",
    "JsonFileStorage",
    "MemoryStorage",
    "ILedgerStore",
    "LedgerError",
    "LedgerStore",
    "StoreConflict",
    "StoreUnavailable",
]
