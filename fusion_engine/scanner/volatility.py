"""Historical volatility and IV percentile ranking against a trailing year."""

from __future__ import annotations

import asyncio
import logging
import math
from bisect import bisect_left
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from fusion_engine.adapters.base import AdapterError, HistoricalDataProvider

logger = logging.getLogger(__name__)

TRADING_DAYS_PER_YEAR = 252
HV_WINDOW = 30
HV_LOOKBACK_DAYS = 35
DISTRIBUTION_LOOKBACK_DAYS = 400
DEFAULT_HV = 0.20
MIN_HV_BARS = 20
CHEAP_FALLBACK_PERCENTILE = 15.0
NEUTRAL_FALLBACK_PERCENTILE = 50.0


def log_returns(closes: Sequence[float]) -> pd.Series:
    series = pd.Series(closes, dtype=float)
    series = series[series > 0]
    return np.log(series / series.shift(1)).dropna()


def annualized_volatility(closes: Sequence[float]) -> Optional[float]:
    """Population standard deviation of daily log returns, annualised."""

    returns = log_returns(closes)
    if len(returns) < 2:
        return None
    return float(returns.std(ddof=0) * math.sqrt(TRADING_DAYS_PER_YEAR))


def rolling_volatility(closes: Sequence[float], window: int = HV_WINDOW) -> List[float]:
    """Annualised HV of every ``window``-bar slice of ``closes``."""

    returns = log_returns(closes)
    rolled = returns.rolling(window - 1).std(ddof=0).dropna() * math.sqrt(TRADING_DAYS_PER_YEAR)
    return [float(value) for value in rolled if math.isfinite(value)]


@dataclass(frozen=True)
class VolatilityDistribution:
    """Sorted HV samples for one symbol, frozen once built."""

    symbol: str
    samples: Tuple[float, ...]
    built_on: date

    def percentile(self, value: float) -> float:
        """Share of samples strictly below ``value``, as 0-100."""

        if not self.samples:
            return NEUTRAL_FALLBACK_PERCENTILE
        return 100.0 * bisect_left(self.samples, value) / len(self.samples)

    def __len__(self) -> int:
        return len(self.samples)


class VolatilityAnalyzer:
    """HV30 and IV percentile per symbol, with a daily-rebuilt distribution cache."""

    def __init__(
        self,
        provider: HistoricalDataProvider,
        *,
        window: int = HV_WINDOW,
        trading_days: int = TRADING_DAYS_PER_YEAR,
        default_hv: float = DEFAULT_HV,
        min_bars: int = MIN_HV_BARS,
        today_provider: Callable[[], date] = date.today,
    ) -> None:
        self.provider = provider
        self.window = window
        self.trading_days = trading_days
        self.default_hv = default_hv
        self.min_bars = min_bars
        self._today = today_provider
        self._distributions: Dict[str, VolatilityDistribution] = {}
        self._build_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def closes(self, symbol: str, calendar_days: int) -> List[float]:
        today = self._today()
        try:
            bars = await self.provider.get_bars(symbol, today - timedelta(days=calendar_days), today)
        except AdapterError as exc:
            logger.warning("No daily bars for %s: %s", symbol, exc)
            return []
        return [bar.close for bar in bars]

    async def historical_volatility_30d(self, symbol: str, closes: Optional[Sequence[float]] = None) -> float:
        prices = list(closes) if closes is not None else await self.closes(symbol, HV_LOOKBACK_DAYS)
        if len(prices) < self.min_bars:
            logger.debug("Only %d bars for %s; using default HV %.2f", len(prices), symbol, self.default_hv)
            return self.default_hv
        hv = annualized_volatility(prices[-(self.window + 1):])
        return hv if hv is not None and hv > 0 else self.default_hv

    def build_distribution(self, symbol: str, closes: Sequence[float]) -> Optional[VolatilityDistribution]:
        trailing = list(closes)[-self.trading_days:]
        if len(trailing) < self.window:
            return None
        samples = sorted(rolling_volatility(trailing, self.window))
        if not samples:
            return None
        return VolatilityDistribution(symbol=symbol.upper(), samples=tuple(samples), built_on=self._today())

    async def cached_distribution(self, symbol: str) -> Optional[VolatilityDistribution]:
        async with self._lock:
            return self._distributions.get(symbol.upper())

    async def distribution(self, symbol: str, allow_stale: bool = False) -> Optional[VolatilityDistribution]:
        """Return the symbol's distribution, rebuilding at most once per day.

        With ``allow_stale`` an out-of-date distribution is returned while
        another task is already rebuilding it, instead of waiting on that
        rebuild.  The first caller on a new day always rebuilds.
        """

        key = symbol.upper()
        async with self._lock:
            cached = self._distributions.get(key)
            if cached is not None and cached.built_on == self._today():
                return cached
            build_lock = self._build_locks.setdefault(key, asyncio.Lock())
            if cached is not None and allow_stale and build_lock.locked():
                return cached

        async with build_lock:
            async with self._lock:
                cached = self._distributions.get(key)
                if cached is not None and cached.built_on == self._today():
                    return cached
            closes = await self.closes(key, DISTRIBUTION_LOOKBACK_DAYS)
            built = self.build_distribution(key, closes)
            if built is None:
                logger.debug("Not enough history to build a distribution for %s", key)
                return cached
            async with self._lock:
                self._distributions[key] = built
            logger.debug("Built %d-sample HV distribution for %s", len(built), key)
            return built

    async def iv_percentile(
        self,
        symbol: str,
        current_iv: float,
        hv30: Optional[float] = None,
        allow_stale: bool = True,
    ) -> float:
        distribution = await self.distribution(symbol, allow_stale=allow_stale)
        if distribution is not None and len(distribution):
            return distribution.percentile(current_iv)
        reference = hv30 if hv30 is not None else await self.historical_volatility_30d(symbol)
        return CHEAP_FALLBACK_PERCENTILE if current_iv < reference else NEUTRAL_FALLBACK_PERCENTILE


__all__ = [
    "DEFAULT_HV",
    "VolatilityAnalyzer",
    "VolatilityDistribution",
    "annualized_volatility",
    "rolling_volatility",
]
