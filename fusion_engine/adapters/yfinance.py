"""Secondary historical-bars provider backed by the public yfinance client."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, List

import pandas as pd
import yfinance as yf

from fusion_engine.models import HistoricalBar

from .base import AdapterError, DataNotAvailable, HistoricalDataProvider, TransportError

logger = logging.getLogger(__name__)

_INTERVALS = {
    ("day", 1): "1d",
    ("hour", 1): "1h",
    ("minute", 1): "1m",
    ("minute", 5): "5m",
    ("minute", 15): "15m",
    ("minute", 30): "30m",
}


def _is_valid_price(value: Any) -> bool:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


def frame_to_bars(history: pd.DataFrame) -> List[HistoricalBar]:
    """Convert a yfinance ``history`` frame into bars, skipping bad rows."""

    if history is None or history.empty or "Close" not in history.columns:
        return []
    bars: List[HistoricalBar] = []
    for timestamp, row in history.iterrows():
        close = row.get("Close")
        if not _is_valid_price(close):
            continue
        stamp = pd.Timestamp(timestamp)
        stamp = stamp.tz_localize("America/New_York") if stamp.tzinfo is None else stamp
        bars.append(
            HistoricalBar(
                timestamp=stamp.tz_convert("UTC").to_pydatetime(),
                open=float(row.get("Open", close)),
                high=float(row.get("High", close)),
                low=float(row.get("Low", close)),
                close=float(close),
                volume=float(row.get("Volume", 0.0) or 0.0),
            )
        )
    return bars


class YFinanceHistoryAdapter(HistoricalDataProvider):
    """Fetch aggregate bars from Yahoo Finance in a worker thread."""

    def __init__(
        self,
        ticker_factory: Callable[[str], yf.Ticker] | None = None,
        max_retries: int = 3,
        base_delay: float = 0.75,
        max_delay: float = 4.0,
        jitter: float = 0.3,
        timeout_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._ticker_factory = ticker_factory or yf.Ticker
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep

    @property
    def name(self) -> str:
        return "yfinance"

    async def get_bars(
        self,
        symbol: str,
        start: date,
        end: date,
        timespan: str = "day",
        multiplier: int = 1,
    ) -> List[HistoricalBar]:
        interval = _INTERVALS.get((timespan, multiplier))
        if interval is None:
            raise DataNotAvailable(f"yfinance has no {multiplier} {timespan} interval")
        ticker = self._ticker_factory(symbol)
        # yfinance treats ``end`` as exclusive.
        history = await self._retry(
            lambda: ticker.history(start=start.isoformat(), end=(end + timedelta(days=1)).isoformat(), interval=interval),
            context=f"fetch {interval} history for {symbol}",
        )
        bars = frame_to_bars(history)
        if not bars:
            raise DataNotAvailable(f"yfinance returned no bars for {symbol}")
        return bars

    async def _retry(self, operation: Callable[[], Any], context: str) -> Any:
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return await asyncio.wait_for(asyncio.to_thread(operation), timeout=self._timeout_seconds)
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning(
                    "Timeout after %.0fs while trying to %s (attempt %d/%d)",
                    self._timeout_seconds,
                    context,
                    attempt + 1,
                    self._max_retries,
                )
            except Exception as exc:  # yfinance raises generic errors
                last_error = exc
                logger.warning("Failed to %s (attempt %d/%d): %s", context, attempt + 1, self._max_retries, exc)
            if attempt < self._max_retries - 1:
                await self._apply_rate_limit_backoff(attempt)

        if isinstance(last_error, asyncio.TimeoutError):
            raise TransportError(f"Timeout after {self._timeout_seconds}s while trying to {context}") from last_error
        raise AdapterError(f"Failed to {context}: {last_error}") from last_error

    async def _apply_rate_limit_backoff(self, attempt: int) -> None:
        delay = min(self._max_delay, self._base_delay * (1 + attempt))
        delay += random.uniform(0, self._jitter)
        await self._sleep(delay)


__all__ = ["YFinanceHistoryAdapter", "frame_to_bars"]
