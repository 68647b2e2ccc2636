"""Per-symbol memoisation of Black-Scholes terms across a strike ladder."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple

from fusion_engine.models import GreeksResult

from .black_scholes import BlackScholesEngine, SurfaceTerms

logger = logging.getLogger(__name__)

SurfacePoint = Tuple[float, str]
SurfaceKey = Tuple[str, float, str, float]


def _side(option_type: str) -> str:
    return "put" if option_type.lower().startswith("p") else "call"


def surface_key(symbol: str, strike: float, option_type: str, time_to_expiry: float) -> SurfaceKey:
    return (symbol.upper(), float(strike), _side(option_type), round(time_to_expiry, 6))


class GreeksSurfaceCache:
    """Caches d1/d2/N(d1)/N(d2)/n(d1) keyed by (symbol, strike, side, expiry).

    Calls and puts at one strike trade at different implied vols, so each
    side owns its entry.  Entries are reused only when spot, vol and rate
    match the cached inputs.  Concurrent primes of the same key overwrite
    each other with identical values, so the cache takes no lock.
    """

    def __init__(self, engine: BlackScholesEngine) -> None:
        self.engine = engine
        self._terms: Dict[SurfaceKey, SurfaceTerms] = {}
        self.hits = 0
        self.misses = 0

    def prime(
        self,
        symbol: str,
        spot: float,
        points: Iterable[SurfacePoint],
        time_to_expiry: float,
        volatility: float | Mapping[SurfacePoint, float],
        rate: Optional[float] = None,
    ) -> int:
        """Compute terms for every ``(strike, option_type)`` point; returns the count stored."""

        stored = 0
        for strike, option_type in points:
            side = _side(option_type)
            sigma = volatility.get((strike, side)) if isinstance(volatility, Mapping) else volatility
            if not sigma or sigma <= 0 or strike <= 0 or time_to_expiry <= 0 or spot <= 0:
                continue
            terms = self.engine.terms(spot, strike, time_to_expiry, sigma, rate)
            self._terms[surface_key(symbol, strike, side, time_to_expiry)] = terms
            stored += 1
        logger.debug("Primed %d surface points for %s (T=%.6f)", stored, symbol, time_to_expiry)
        return stored

    def lookup(
        self,
        symbol: str,
        strike: float,
        option_type: str,
        time_to_expiry: float,
        spot: float,
        volatility: float,
        rate: Optional[float] = None,
    ) -> Optional[SurfaceTerms]:
        terms = self._terms.get(surface_key(symbol, strike, option_type, time_to_expiry))
        r = self.engine.risk_free_rate if rate is None else rate
        if terms is None or terms.spot != spot or terms.volatility != volatility or terms.rate != r:
            return None
        return terms

    def greeks(
        self,
        symbol: str,
        spot: float,
        strike: float,
        time_to_expiry: float,
        volatility: float,
        option_type: str,
        rate: Optional[float] = None,
    ) -> GreeksResult:
        if time_to_expiry <= 0 or volatility <= 0:
            return self.engine.greeks(spot, strike, time_to_expiry, rate, volatility, option_type)
        terms = self.lookup(symbol, strike, option_type, time_to_expiry, spot, volatility, rate)
        if terms is None:
            self.misses += 1
            terms = self.engine.terms(spot, strike, time_to_expiry, volatility, rate)
            self._terms[surface_key(symbol, strike, option_type, time_to_expiry)] = terms
        else:
            self.hits += 1
        return self.engine.greeks_from_terms(terms, option_type)

    def clear(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._terms.clear()
            return
        prefix = symbol.upper()
        for key in [key for key in self._terms if key[0] == prefix]:
            self._terms.pop(key, None)

    def __len__(self) -> int:
        return len(self._terms)


__all__ = ["GreeksSurfaceCache", "SurfacePoint", "surface_key"]
