"""Runtime settings read from ``TRADESIM_*`` environment variables."""

from __future__ import annotations

import logging
import math
import os
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENV_PREFIX = "TRADESIM_"
MIN_REFRESH_MS = 10_000
MAX_REFRESH_MS = 60_000
QUOTE_SOURCES = ("mock", "yahoo")


@dataclass
class Settings:
    initial_cash: Decimal = Decimal("100000")
    data_dir: Optional[Path] = None  # None keeps the ledger in memory
    quote_source: str = "mock"
    refresh_interval_ms: int = 30_000
    max_write_retries: int = 3
    retry_backoff_s: float = 0.2
    http_timeout_s: float = 5.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the environment.

        Invalid values are logged and replaced by the defaults.
        """
        env = os.environ if env is None else env
        defaults = cls()

        def read(name: str, parse: Callable[[str], T], default: T) -> T:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return parse(raw.strip())
            except (ValueError, InvalidOperation) as e:
                logger.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}: {e}")
                return default

        def non_negative_decimal(raw: str) -> Decimal:
            value = Decimal(raw)
            if not value.is_finite() or value < 0:
                raise ValueError("must be a non-negative number")
            return value

        def non_negative_int(raw: str) -> int:
            value = int(raw)
            if value < 0:
                raise ValueError("must be >= 0")
            return value

        def non_negative_float(raw: str) -> float:
            value = float(raw)
            if not math.isfinite(value) or value < 0:
                raise ValueError("must be a finite number >= 0")
            return value

        def positive_float(raw: str) -> float:
            value = non_negative_float(raw)
            if value == 0:
                raise ValueError("must be > 0")
            return value

        def source(raw: str) -> str:
            value = raw.lower()
            if value not in QUOTE_SOURCES:
                raise ValueError(f"expected one of {', '.join(QUOTE_SOURCES)}")
            return value

        interval = read("REFRESH_INTERVAL_MS", int, defaults.refresh_interval_ms)
        data_dir = read("DATA_DIR", Path, defaults.data_dir)

        return cls(
            initial_cash=read("INITIAL_CASH", non_negative_decimal, defaults.initial_cash),
            data_dir=data_dir,
            quote_source=read("QUOTE_SOURCE", source, defaults.quote_source),
            refresh_interval_ms=min(max(interval, MIN_REFRESH_MS), MAX_REFRESH_MS),
            max_write_retries=read("MAX_WRITE_RETRIES", non_negative_int, defaults.max_write_retries),
            retry_backoff_s=read("RETRY_BACKOFF_S", non_negative_float, defaults.retry_backoff_s),
            http_timeout_s=read("HTTP_TIMEOUT_S", positive_float, defaults.http_timeout_s),
            log_level=read("LOG_LEVEL", str.upper, defaults.log_level),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
