"""Identity supplied by the external authentication provider."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional[str]], None]


class NotAuthenticated(Exception):
    """No user is signed in."""


class IAuthProvider(ABC):
    """Interface for the current-user source.

    The trading core never authenticates anyone; it only partitions ledger
    access by the user id reported here.
    """

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        ...

    @abstractmethod
    def add_listener(self, callback: AuthListener) -> Callable[[], None]:
        """Call ``callback(user_id)`` whenever the signed-in user changes.

        Returns:
            A callable that removes the listener
        """
        ...

    def require_user(self) -> str:
        user_id = self.current_user_id()
        if not user_id:
            raise NotAuthenticated("User not authenticated")
        return user_id


class LocalAuthProvider(IAuthProvider):
    """In-process provider used for local sessions, demos and tests."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        self._user_id = user_id
        self._listeners: List[AuthListener] = []
        self._lock = threading.Lock()

    def current_user_id(self) -> Optional[str]:
        with self._lock:
            return self._user_id

    def add_listener(self, callback: AuthListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return remove

    def sign_in(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        self._set(user_id)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, user_id: Optional[str]) -> None:
        with self._lock:
            if user_id == self._user_id:
                return
            self._user_id = user_id
            listeners = list(self._listeners)
        logger.info(f"Signed-in user changed to {user_id!r}")
        for listener in listeners:
            listener(user_id)
