"""Pricing math: erf table, Black-Scholes engine, surface cache and indicators."""

from .black_scholes import BlackScholesEngine, SolverError, SurfaceTerms
from .erf import ErfLookupTable
from .indicators import IVSkew, iv_skew, max_pain_strike, rsi, wilder_rsi
from .surface import GreeksSurfaceCache

__all__ = [
    "BlackScholesEngine",
    "ErfLookupTable",
    "GreeksSurfaceCache",
    "IVSkew",
    "SolverError",
    "SurfaceTerms",
    "iv_skew",
    "max_pain_strike",
    "rsi",
    "wilder_rsi",
]
