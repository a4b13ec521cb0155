from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator


@dataclass
class _Entry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class UserLockRegistry:
    """One re-entrant lock per user id.

    Every read-modify-write of a user's ledger runs under that user's lock,
    which linearizes executions and valuation refreshes per user. Users
    never contend with each other. An entry lives only while some thread
    holds or waits for it.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(user_id)
            if entry is None:
                entry = self._entries[user_id] = _Entry()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[user_id]
