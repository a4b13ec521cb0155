"""Key-value document storage underneath the ledger store.

Two substrates share one interface: a process-local dictionary for mock
and test sessions, and a directory of JSON documents for persistent ones.
Both offer ``locked(key)``, an exclusive section that every holder of the
same substrate (another store object, or another process on the same
directory) has to wait for.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_S = 10.0


class IStorageService(ABC):
    """Stores JSON-compatible documents under string keys."""

    @abstractmethod
    def save(self, key: str, data: Any) -> None:
        """Replace the document stored under ``key``.

        Args:
            key: Document identifier
            data: JSON-serializable document
        """
        ...

    @abstractmethod
    def load(self, key: str) -> Optional[Any]:
        """Return the document stored under ``key``.

        Args:
            key: Document identifier

        Returns:
            The stored document, or None if there is none

        Raises:
            ValueError: If a stored document exists but cannot be decoded
            OSError: If the backing medium cannot be read
        """
        ...

    @abstractmethod
    def locked(self, key: str) -> Iterator[None]:
        """Context manager holding exclusive access to ``key``.

        A load-check-save sequence run inside it cannot interleave with one
        run by any other user of the same substrate. Sections must not nest.

        Raises:
            OSError: If the lock cannot be acquired
        """
        ...


class MemoryStorage(IStorageService):
    """Documents kept in a dict; nothing survives the process."""

    def __init__(self) -> None:
        self._docs: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._section = threading.RLock()

    def save(self, key: str, data: Any) -> None:
        """Store a deep copy of ``data`` under ``key``.

        Args:
            key: Document identifier
            data: Document to copy in
        """
        snapshot = copy.deepcopy(data)
        with self._lock:
            self._docs[key] = snapshot

    def load(self, key: str) -> Optional[Any]:
        """Return a deep copy of the document under ``key``.

        Args:
            key: Document identifier

        Returns:
            The caller's own copy, or None if nothing is stored
        """
        with self._lock:
            doc = self._docs.get(key)
        return copy.deepcopy(doc)

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        # One section for all keys; memory sessions are small
        with self._section:
            yield


class JsonFileStorage(IStorageService):
    """One ``<key>.json`` file per document under ``base_path``.

    A save writes a sibling temp file and renames it over the target, so
    a concurrent load sees either the old or the new document. Exclusive
    sections use a ``.<key>.lock`` file next to the document, which also
    excludes other processes pointed at the same directory.
    """

    def __init__(self, base_path: str | Path, lock_timeout_s: float = DEFAULT_LOCK_TIMEOUT_S) -> None:
        """Initialize the storage, creating ``base_path`` if needed.

        Args:
            base_path: Directory holding the documents
            lock_timeout_s: Seconds to wait for an exclusive section
        """
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._lock_timeout_s = lock_timeout_s

    def _safe_name(self, key: str) -> str:
        return key.replace("/", "_").replace("\\", "_")

    def _path_for(self, key: str) -> Path:
        return self._base_path / f"{self._safe_name(key)}.json"

    def _lock_path_for(self, key: str) -> Path:
        return self._base_path / f".{self._safe_name(key)}.lock"

    def save(self, key: str, data: Any) -> None:
        """Write ``data`` atomically.

        Args:
            key: Document identifier
            data: JSON-serializable document

        Raises:
            TypeError: If data is not JSON-serializable
            OSError: If the file cannot be written
        """
        target = self._path_for(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._base_path, prefix=".tmp-", suffix=".json")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, target)
        except (TypeError, OSError) as e:
            logger.error(f"Could not write document '{key}' to {target}: {e}")
            tmp_path.unlink(missing_ok=True)
            raise

    def load(self, key: str) -> Optional[Any]:
        """Read the document stored under ``key``.

        Args:
            key: Document identifier

        Returns:
            The decoded document, or None if the file doesn't exist

        Raises:
            ValueError: If the file holds corrupted JSON
            OSError: If the file cannot be read
        """
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Document '{key}' at {path} is corrupted: {e}")
            raise
        except OSError as e:
            logger.error(f"Could not read document '{key}' from {path}: {e}")
            raise

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Hold the lock file of ``key`` for the duration of the block.

        Raises:
            OSError: If the lock is not acquired within the timeout
        """
        # A fresh FileLock per section, so concurrent threads each open
        # their own handle and exclude one another
        lock = FileLock(str(self._lock_path_for(key)), timeout=self._lock_timeout_s)
        try:
            lock.acquire()
        except Timeout as e:
            logger.error(f"Timed out after {self._lock_timeout_s}s waiting for lock on '{key}'")
            raise OSError(f"Lock on '{key}' is held elsewhere") from e
        try:
            yield
        finally:
            lock.release()
