"""Real-time market-data fusion and options signal scoring."""

from __future__ import annotations

from .adapters.base import (
    AdapterError,
    AuthError,
    DataNotAvailable,
    DataValidationError,
    RateLimitError,
    TransportError,
)
from .math.black_scholes import SolverError
from .models import (
    Candidate,
    GreeksResult,
    HistoricalBar,
    OptionContractSnapshot,
    QuoteSnapshot,
    ScanDiagnostics,
    ScanMode,
    ScanResult,
    ScoreBreakdown,
)
from .service import MarketDataEngine

__all__ = [
    "AdapterError",
    "AuthError",
    "Candidate",
    "DataNotAvailable",
    "DataValidationError",
    "GreeksResult",
    "HistoricalBar",
    "MarketDataEngine",
    "OptionContractSnapshot",
    "QuoteSnapshot",
    "RateLimitError",
    "ScanDiagnostics",
    "ScanMode",
    "ScanResult",
    "ScoreBreakdown",
    "SolverError",
    "TransportError",
]
